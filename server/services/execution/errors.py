"""Error taxonomy for the execution engine.

Admission errors are raised synchronously to the caller that fired a
trigger and mean no Job or Execution was created. Node failures are not
exceptions; executors return a ``NodeError`` value and the walker applies the
workflow's error-handling policy.
"""

from typing import Any, Dict, List, Optional


# Node error codes
INVALID_CONFIG = "INVALID_CONFIG"
MISSING_REQUIRED_INPUT = "MISSING_REQUIRED_INPUT"
UNKNOWN_NODE_TYPE = "UNKNOWN_NODE_TYPE"
NODE_TIMEOUT = "NODE_TIMEOUT"
NETWORK_ERROR = "NETWORK_ERROR"
HTTP_ERROR = "HTTP_ERROR"
HANDLER_EXCEPTION = "HANDLER_EXCEPTION"
DEPENDENCY_FAILED = "DEPENDENCY_FAILED"

# Execution error codes
EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
CANCELLED = "CANCELLED"
WORKFLOW_VERSION_MISSING = "WORKFLOW_VERSION_MISSING"
INTERNAL_ERROR = "INTERNAL_ERROR"


class EngineError(Exception):
    """Base class for structured engine errors surfaced to callers."""

    code = INTERNAL_ERROR
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


# =============================================================================
# ADMISSION ERRORS
# =============================================================================

class WorkflowNotFoundError(EngineError):
    code = "WORKFLOW_NOT_FOUND"
    status_code = 404


class InvalidTokenError(EngineError):
    code = "INVALID_TOKEN"
    status_code = 401


class WorkflowNotActiveError(EngineError):
    code = "WORKFLOW_NOT_ACTIVE"
    status_code = 400


class QueueFullError(EngineError):
    code = "QUEUE_FULL"
    status_code = 429

    def __init__(self, message: str, pending: int = 0, limit: int = 0):
        super().__init__(message)
        self.pending = pending
        self.limit = limit


class LimitExceededError(EngineError):
    code = "LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, current: int, limit: int, remaining: int):
        super().__init__(message)
        self.current = current
        self.limit = limit
        self.remaining = remaining

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["usage"] = {"current": self.current, "limit": self.limit, "remaining": self.remaining}
        return data


class ForbiddenError(EngineError):
    code = "FORBIDDEN"
    status_code = 403


class UnsupportedTriggerError(EngineError):
    code = "INVALID_TRIGGER"
    status_code = 400


# =============================================================================
# LOOKUP / STATE ERRORS
# =============================================================================

class ExecutionNotFoundError(EngineError):
    code = "EXECUTION_NOT_FOUND"
    status_code = 404


class JobNotFoundError(EngineError):
    code = "JOB_NOT_FOUND"
    status_code = 404


class JobStateError(EngineError):
    code = "INVALID_JOB_STATE"
    status_code = 409


class WorkflowValidationError(EngineError):
    """Raised at publish time; carries every problem found."""

    code = "WORKFLOW_INVALID"
    status_code = 422

    def __init__(self, problems: List[str]):
        super().__init__("; ".join(problems) or "Workflow is invalid")
        self.problems = problems

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["problems"] = self.problems
        return data


class ExpressionError(ValueError):
    """Malformed expression text."""
