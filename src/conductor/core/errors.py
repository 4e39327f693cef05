"""Error taxonomy for the task engine.

Contract violations and fatal conditions are raised as ``EngineError``
subclasses. Tool-level problems are never raised: they travel back to the
model as failed ``ToolResult`` values carrying one of the ``*_KIND`` strings
below.
"""

from __future__ import annotations

INVALID_ARGUMENTS = "InvalidArguments"
REPETITION_LIMIT_EXCEEDED = "RepetitionLimitExceeded"
TOOL_EXECUTION_ERROR = "ToolExecutionError"
TOOL_DENIED = "ToolDenied"
DEGRADED_CONTEXT = "DegradedContext"

AUTH_INVALID = "AuthInvalid"
RATE_LIMITED = "RateLimited"
NETWORK_INTERRUPTED = "NetworkInterrupted"
MODEL_UNAVAILABLE = "ModelUnavailable"
CONTENT_FILTERED = "ContentFiltered"
UNKNOWN_PROVIDER_ERROR = "Unknown"

PROVIDER_ERROR_KINDS = (
    AUTH_INVALID,
    RATE_LIMITED,
    NETWORK_INTERRUPTED,
    MODEL_UNAVAILABLE,
    CONTENT_FILTERED,
    UNKNOWN_PROVIDER_ERROR,
)


class EngineError(Exception):
    kind = "EngineError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class InvalidGoal(EngineError):
    kind = "InvalidGoal"


class InvalidState(EngineError):
    kind = "InvalidState"


class TaskNotFound(EngineError):
    kind = "TaskNotFound"


class CheckpointNotFound(EngineError):
    kind = "CheckpointNotFound"


class WorkspaceBusy(EngineError):
    kind = "WorkspaceBusy"


class ContextOverflow(EngineError):
    kind = "ContextOverflow"


class ProviderFailure(EngineError):
    kind = "ProviderError"

    def __init__(self, error_kind: str, message: str = "", retryable: bool = False) -> None:
        super().__init__(message or error_kind)
        self.error_kind = error_kind
        self.retryable = retryable

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.error_kind, "message": self.message}


class ProviderClientError(Exception):
    """Raised by provider clients for failed requests."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TaskCancelled(Exception):
    """Raised inside the worker loop once cancellation has been requested."""
