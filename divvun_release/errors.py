"""Error taxonomy shared by release pipeline components."""

from __future__ import annotations


class ReleaseError(RuntimeError):
    """Base class for errors that fail a pipeline run.

    ``transient`` marks failures that may succeed when retried (network
    hiccups, command timeouts). Steps only retry transient errors, and only
    when the step definition asks for retries.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ProvisionError(ReleaseError):
    """Raised when a toolchain or build dependency cannot be installed."""


class BuildError(ReleaseError):
    """Raised when the build tool fails or produces no artifact."""


class PackagingError(ReleaseError):
    """Raised when staging or archiving release artifacts fails."""


class SigningError(ReleaseError):
    """Raised when artifacts cannot be signed."""


class PublishError(ReleaseError):
    """Raised when a package cannot be uploaded to its repository."""

    def __init__(self, message: str, *, transient: bool = False, conflict: bool = False) -> None:
        super().__init__(message, transient=transient)
        self.conflict = conflict


class PipelineError(ReleaseError):
    """Raised when a pipeline definition or step wiring is invalid."""


__all__ = [
    "BuildError",
    "PackagingError",
    "PipelineError",
    "ProvisionError",
    "PublishError",
    "ReleaseError",
    "SigningError",
]
