"""Error taxonomy for waypoint workflows."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class WaypointError(Exception):
    """Base class for all waypoint errors."""

    code = "waypoint_error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
        self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for structured logs and status records."""
        data: Dict[str, Any] = {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.__cause__ is not None:
            data["cause"] = {
                "name": type(self.__cause__).__name__,
                "message": str(self.__cause__),
            }
        return data


class WorkflowValidationError(WaypointError):
    """Workflow definition is malformed (cycles, missing fields, unknown ids)."""

    code = "validation_error"


class StepError(WaypointError):
    """Raised by step executors to signal a classified failure."""

    code = "step_error"

    def __init__(self, message: str, step_id: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.step_id = step_id


class TransientStepError(StepError):
    """Retryable step failure (network hiccup, timeout, rate limit)."""

    code = "transient_step_error"


class PermanentStepError(StepError):
    """Non-retryable step failure, e.g. malformed inputs."""

    code = "permanent_step_error"


class WorkflowFailure(WaypointError):
    """A run ended in the ``failed`` state."""

    code = "workflow_failure"

    def __init__(self, message: str, run_id: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.run_id = run_id


class InvalidStateTransitionError(WaypointError):
    """Out-of-order state machine operation."""

    code = "invalid_state_transition"


class RunNotFoundError(WaypointError):
    """No run record exists for the requested run id."""

    code = "run_not_found"


class EscalationNotFoundError(WaypointError):
    """No escalation exists for the requested id."""

    code = "escalation_not_found"


class EscalationStateError(WaypointError):
    """Escalation is not in a state that allows the requested operation."""

    code = "escalation_invalid_state"


class EscalationAlreadyResolvedError(EscalationStateError):
    """A response was already recorded for the escalation."""

    code = "escalation_already_resolved"


class GenerationError(WaypointError):
    """Generative reasoning backend failed or is unavailable."""

    code = "generation_error"


class StoreWriteError(WaypointError):
    """Durable write failed; prior state is left intact."""

    code = "store_write_error"
