"""Exceptions related to kube-release."""

__all__ = [
    "ReleaseException",
    "InputException",
    "CommandException",
    "MissingProvenance",
    "BuildFailure",
    "PublishFailure",
    "RenderFailure",
    "UnresolvedPlaceholder",
    "RolloutTimeout",
    "RolloutFailure",
    "RolloutStateError",
    "StageFailedError",
]


class ReleaseException(Exception):
    """Generic base exception used for this library."""


class InputException(ReleaseException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(ReleaseException):
    """Raised when there is a failure running a subcommand."""


class MissingProvenance(InputException):
    """Raised when the commit identifier for a build is not available."""


class BuildFailure(CommandException):
    """Raised when the container build backend fails.

    This is not retryable without a change to the source tree.
    """

    def __init__(self, message: str, output: str | None = None) -> None:
        super().__init__(message)
        self.output = output or ""


class PublishFailure(ReleaseException):
    """Raised when one or more tags could not be pushed to the registry."""

    def __init__(self, message: str, failed_tags: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed_tags = failed_tags or []


class RenderFailure(InputException):
    """Raised when the manifest templates can't be rendered."""


class UnresolvedPlaceholder(RenderFailure):
    """Raised when a required value is missing after substitution."""

    def __init__(self, names: list[str], message: str | None = None) -> None:
        super().__init__(message or f"Unresolved placeholders: {', '.join(names)}")
        self.names = names


class RolloutTimeout(ReleaseException):
    """Raised when a rollout did not become healthy before the deadline."""


class RolloutFailure(ReleaseException):
    """Raised when the cluster reports a permanent rollout error."""


class RolloutStateError(ReleaseException):
    """Raised on an invalid rollout status transition."""


class StageFailedError(ReleaseException):
    """Raised by the run driver when a pipeline stage fails."""

    def __init__(self, stage: str, cause: Exception) -> None:
        super().__init__(f"Stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause
