from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for every error raised by the segment pipeline."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PipelineError):
    """Bad input shape. Not retryable."""


class NotFoundError(PipelineError):
    """Missing file, unit or TM entry."""


class ForbiddenError(PipelineError):
    """The acting user's role does not allow the operation."""


class CodecError(PipelineError):
    """Malformed or unreadable bitext document. The whole file operation is aborted."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to process XLIFF file {path}: {reason}", {"path": path})
        self.path = path
        self.reason = reason


class CapabilityError(PipelineError):
    """An AI translation or review call failed. Retryable at job level."""

    def __init__(self, message: str, provider: str = "unknown", retryable: bool = True):
        super().__init__(message, {"provider": provider})
        self.provider = provider
        self.retryable = retryable


class StateTransitionError(PipelineError):
    """Illegal status change. Signals a programming error or a lost race."""

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        text = message or f"Illegal transition from {current} to {attempted}"
        super().__init__(text, {"current": current, "attempted": attempted})
        self.current = current
        self.attempted = attempted


class ConcurrentUpdateError(StateTransitionError):
    """A save carried a stale revision; somebody else updated the unit first."""

    def __init__(self, unit_id: str, expected: int, actual: int):
        super().__init__(
            current=f"revision {actual}",
            attempted=f"revision {expected}",
            message=f"Unit {unit_id} was modified concurrently (expected revision {expected}, found {actual})",
        )
        self.unit_id = unit_id
