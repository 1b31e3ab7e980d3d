# errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - API responses
      - debugging without full tracebacks
    """
    kind = "ci_error"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(CIError):
    """Invalid workflow configuration or template expression."""
    kind = "config_error"


class EventError(CIError):
    """Malformed or unsupported trigger event."""
    kind = "event_error"


class SchedulingError(CIError):
    """No agent can ever satisfy an instance's required labels."""
    kind = "scheduling_error"


class StepFailure(CIError):
    """A step's command exited non-zero."""
    kind = "step_failure"

    def __init__(self, message: str, *, exit_code: Optional[int] = None, attempts: int = 1, **kw):
        super().__init__(message, **kw)
        self.exit_code = exit_code
        self.attempts = attempts


class StepTimeout(StepFailure):
    """A step exceeded its allotted time. Retried like any StepFailure."""
    kind = "step_timeout"


class CancellationError(CIError):
    """Cooperative interrupt. A terminal state, not a failure."""
    kind = "cancelled"


class CacheError(CIError):
    """Best-effort cache failure. Logged, never escalated."""
    kind = "cache_error"
