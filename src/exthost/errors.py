"""Error taxonomy for the extension lifecycle subsystem."""

from __future__ import annotations


class ExtensionLifecycleError(Exception):
    """Base class for every error raised by exthost."""


class ManifestReadError(ExtensionLifecycleError):
    """The extension manifest is missing, unparsable or incomplete."""

    def __init__(self, identifier: str, message: str) -> None:
        self.identifier = identifier
        super().__init__(f"[{identifier}] {message}")


class InvalidArgumentError(ExtensionLifecycleError):
    """Malformed version or description passed to the migration tooling."""


class BuildNotReadyError(ExtensionLifecycleError):
    """Compiled entity definitions are absent or unusable.

    ``build_step`` names the step the operator has to run first.
    """

    def __init__(self, identifier: str, message: str, build_step: str = "build") -> None:
        self.identifier = identifier
        self.build_step = build_step
        super().__init__(
            f"[{identifier}] {message} "
            f"(run the '{build_step}' step for extension '{identifier}' first)"
        )


class SchemaDiffError(ExtensionLifecycleError):
    """The schema diff could not produce a usable migration."""


class HookRegistrationError(ExtensionLifecycleError):
    """An upgrade hook could not be registered or loaded."""


class StepExecutionError(ExtensionLifecycleError):
    """A schema migration or custom hook failed for one version.

    Parameters
    ----------
    identifier:
        Extension identifier.
    version:
        The version whose step failed.
    phase:
        ``"schema"`` or ``"logic"``.
    """

    def __init__(self, identifier: str, version: str, phase: str, message: str) -> None:
        self.identifier = identifier
        self.version = version
        self.phase = phase
        super().__init__(f"[{identifier}] {phase} phase failed at version {version}: {message}")
