"""Execution engine state models.

Job lifecycle follows a claim-based queue: PENDING -> PROCESSING ->
COMPLETED, or back to PENDING with backoff on a retryable failure until the
attempt budget is spent and the job is FAILED for good.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from models.workflow import RetryPolicySettings


class JobStatus(str, Enum):
    """Queue entry states."""
    PENDING = "pending"          # Waiting for run_at, claimable
    PROCESSING = "processing"    # Claimed by exactly one worker
    COMPLETED = "completed"      # Finished (execution may still have failed)
    FAILED = "failed"            # Attempts exhausted or cancelled


class ExecutionStatus(str, Enum):
    """Execution record states.

    State transitions:
        PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED
                   RUNNING <-> PAUSED (delay nodes)
    """
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset([
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
])


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class RetryPolicy:
    """Job retry configuration.

    Implements exponential backoff with configurable limits.
    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_attempts: int = 4
    initial_delay: float = 1.0       # seconds
    max_delay: float = 3600.0        # seconds
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Number of attempts already made before this failure (0-indexed)

        Returns:
            Delay in seconds before next attempt
        """
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def has_attempts_left(self, attempts: int) -> bool:
        return attempts + 1 < self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        """Create from dict."""
        data = data or {}
        return cls(
            max_attempts=data.get("max_attempts", 4),
            initial_delay=data.get("initial_delay", 1.0),
            max_delay=data.get("max_delay", 3600.0),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
        )

    @classmethod
    def from_settings(cls, settings: RetryPolicySettings) -> "RetryPolicy":
        """Build from a workflow's ``retryPolicy`` (milliseconds)."""
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay_ms / 1000.0,
            max_delay=settings.max_delay_ms / 1000.0,
            backoff_multiplier=settings.backoff_multiplier,
        )


@dataclass
class NodeError:
    """Failure captured from one node run."""
    code: str
    message: str
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


@dataclass
class NodeResult:
    """Outcome of ``execute`` for any node kind.

    ``branch`` names the output handle a branching node selected.
    ``suspend_until`` asks the walker to pause the execution until that time.
    """
    output: Any = None
    error: Optional[NodeError] = None
    branch: Optional[str] = None
    suspend_until: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def fail(cls, code: str, message: str, retryable: bool = False) -> "NodeResult":
        return cls(error=NodeError(code=code, message=message, retryable=retryable))


class WalkOutcome(str, Enum):
    """What the worker should do with the job after a walk."""
    COMPLETED = "completed"      # Execution succeeded
    FAILED = "failed"            # Deterministic terminal failure
    RETRY = "retry"              # Transient failure, re-enter the queue
    PAUSED = "paused"            # Delay node, defer the job
    CANCELLED = "cancelled"      # Cancelled externally


@dataclass
class WalkResult:
    outcome: WalkOutcome
    error: Optional[str] = None
    resume_at: Optional[datetime] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    # {code, message, nodeId} used when the walk ends the execution as failed
    error_detail: Optional[Dict[str, Any]] = None
