"""Error taxonomy for pipeline runs."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigError(PipelineError, ValueError):
    """Raised when a run configuration is rejected before any stage starts."""


class CapabilityError(PipelineError):
    """Raised when the AI analysis capability fails one call."""

    retriable: bool = False

    def __init__(self, message: str, *, retriable: bool | None = None) -> None:
        super().__init__(message)
        if retriable is not None:
            self.retriable = retriable


class CapabilityTimeoutError(CapabilityError):
    """Raised when a capability call exceeds its timeout."""

    retriable = True


class CapabilityUnavailableError(CapabilityError):
    """Raised when the capability signals a failure that is not scoped to one item."""

    retriable = False


class StageError(PipelineError):
    """Raised when a stage fails definitively and the run must stop."""

    def __init__(
        self,
        stage: str,
        message: str,
        *,
        success_ratio: float | None = None,
        cause_message: str | None = None,
        item_errors: list | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.success_ratio = success_ratio
        self.cause_message = cause_message
        self.item_errors = list(item_errors or [])


class DataInvariantError(PipelineError):
    """Raised when produced data violates a model invariant."""


class RunCancelledError(PipelineError):
    """Raised when a run observes its cancel signal at a checkpoint."""


class RunNotFoundError(PipelineError, LookupError):
    """Raised when a run id is unknown to a store or registry."""
