"""Core contracts for waypoint workflows: definitions, run state and decisions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import RetryConfig
from .constants import (
    DECISIONS_VARIABLE,
    DEFAULT_MAX_ESCALATIONS,
    DEFAULT_RUN_TIMEOUT_SECONDS,
)
from .errors import InvalidStateTransitionError, WorkflowFailure

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepSpec(BaseModel):
    """Defines one step in a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    action: str = Field(min_length=1, description="Executor name or 'module:attr'")
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: List[str] = Field(default_factory=list)
    dependencies: frozenset[str] = Field(default_factory=frozenset)


class WorkflowDefinition(BaseModel):
    """Immutable workflow definition loaded once per run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: Optional[str] = None
    steps: List[StepSpec] = Field(default_factory=list)

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def get_step(self, step_id: str) -> StepSpec:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


class ExecutionPlan(BaseModel):
    """Steps grouped into dependency-ordered batches.

    Steps inside one batch do not depend on each other; every dependency of a
    step lives in an earlier batch.
    """

    model_config = ConfigDict(frozen=True)

    workflow_name: str
    batches: List[List[str]] = Field(default_factory=list)

    @property
    def order(self) -> List[str]:
        """Flattened execution order."""
        return [step_id for batch in self.batches for step_id in batch]

    @property
    def total_steps(self) -> int:
        return sum(len(batch) for batch in self.batches)


# ---------------------------------------------------------------------------
# Decision values


class _TaggedValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    def unwrap(self) -> Any:
        return self.value  # type: ignore[attr-defined]


class StringValue(_TaggedValue):
    kind: Literal["string"] = "string"
    value: str


class NumberValue(_TaggedValue):
    kind: Literal["number"] = "number"
    value: Union[int, float]


class BooleanValue(_TaggedValue):
    kind: Literal["boolean"] = "boolean"
    value: bool


class MapValue(_TaggedValue):
    kind: Literal["map"] = "map"
    value: Dict[str, Any] = Field(default_factory=dict)


DecisionValue = Annotated[
    Union[StringValue, NumberValue, BooleanValue, MapValue],
    Field(discriminator="kind"),
]

_VALUE_TYPES = (StringValue, NumberValue, BooleanValue, MapValue)


def to_decision_value(raw: Any) -> Optional[DecisionValue]:
    """Wrap a plain Python value in its tagged decision variant.

    Lists are stored as ``{"items": [...]}`` maps; other unknown objects are
    stringified.
    """
    if raw is None or isinstance(raw, _VALUE_TYPES):
        return raw
    if isinstance(raw, bool):
        return BooleanValue(value=raw)
    if isinstance(raw, (int, float)):
        return NumberValue(value=raw)
    if isinstance(raw, str):
        return StringValue(value=raw)
    if isinstance(raw, dict):
        return MapValue(value=raw)
    if isinstance(raw, (list, tuple)):
        return MapValue(value={"items": list(raw)})
    return StringValue(value=str(raw))


def unwrap_value(value: Optional[DecisionValue]) -> Any:
    return None if value is None else value.unwrap()


class DecisionSource(str, Enum):
    KNOWLEDGE_BASE = "knowledge_base"
    GENERATIVE_REASONING = "generative_reasoning"
    HUMAN = "human"
    UNRESOLVED = "unresolved"


class Decision(BaseModel):
    """Immutable result of a decision attempt."""

    model_config = ConfigDict(frozen=True)

    question: str
    decision: Optional[DecisionValue] = None
    confidence: float = Field(ge=0, le=1)
    reasoning: str = ""
    source: DecisionSource
    timestamp: datetime = Field(default_factory=utcnow)
    context: Dict[str, Any] = Field(default_factory=dict)

    @property
    def value(self) -> Any:
        """Plain value of the decision."""
        return unwrap_value(self.decision)


# ---------------------------------------------------------------------------
# Run state


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    AWAITING_ESCALATION = "awaiting_escalation"
    REVIEW = "review"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETE, RunStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.NOT_STARTED: frozenset({RunStatus.IN_PROGRESS, RunStatus.FAILED}),
    RunStatus.IN_PROGRESS: frozenset(
        {RunStatus.AWAITING_ESCALATION, RunStatus.REVIEW, RunStatus.FAILED}
    ),
    RunStatus.AWAITING_ESCALATION: frozenset({RunStatus.IN_PROGRESS, RunStatus.FAILED}),
    # review may be reopened when issues are found
    RunStatus.REVIEW: frozenset(
        {RunStatus.COMPLETE, RunStatus.IN_PROGRESS, RunStatus.FAILED}
    ),
    RunStatus.COMPLETE: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class ErrorSummary(BaseModel):
    """Why a run failed."""

    step_id: Optional[str] = None
    error_type: str
    classification: Literal["transient", "permanent", "cancelled", "timeout"]
    message: str
    retry_count: int = 0


class Workspace(BaseModel):
    """Handle to an isolated execution workspace."""

    name: str
    path: Optional[str] = None


class WorkflowRunState(BaseModel):
    """Mutable state of a single run, owned by one engine task at a time."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    status: RunStatus = RunStatus.NOT_STARTED
    current_step_id: Optional[str] = None
    completed_step_ids: List[str] = Field(default_factory=list)
    total_steps: int = 0
    progress_percentage: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    variables: Dict[str, Any] = Field(default_factory=dict)
    # human answers: step id -> question -> answer
    decisions: Dict[str, Dict[str, DecisionValue]] = Field(default_factory=dict)
    pending_escalation_id: Optional[str] = None
    escalation_count: int = 0
    paused: bool = False
    workspace: Optional[Workspace] = None
    error: Optional[ErrorSummary] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: RunStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: RunStatus) -> RunStatus:
        """Move to ``new_status`` and return the previous status.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        if not self.can_transition(new_status):
            raise InvalidStateTransitionError(
                f"Invalid state transition: {self.status.value} -> {new_status.value}",
                context={
                    "run_id": self.run_id,
                    "current": self.status.value,
                    "requested": new_status.value,
                    "allowed": sorted(s.value for s in ALLOWED_TRANSITIONS[self.status]),
                },
            )
        old_status = self.status
        self.status = new_status
        now = utcnow()
        if new_status == RunStatus.IN_PROGRESS and self.started_at is None:
            self.started_at = now
        if new_status in TERMINAL_STATUSES:
            self.completed_at = now
        self.touch(now)
        logger.debug(
            f"Run {self.run_id} transitioned {old_status.value} -> {new_status.value}"
        )
        return old_status

    def mark_step_complete(self, step_id: str, outputs: Dict[str, Any]) -> None:
        """Record the outputs of a finished step."""
        self.variables[step_id] = outputs
        if step_id not in self.completed_step_ids:
            self.completed_step_ids.append(step_id)
        self.touch()

    def record_human_answer(self, step_id: str, question: str, answer: DecisionValue) -> None:
        """Store a human answer for ``question`` and expose it in ``variables``."""
        self.decisions.setdefault(step_id, {})[question] = answer
        self.variables.setdefault(DECISIONS_VARIABLE, {})[step_id] = unwrap_value(answer)
        self.touch()

    def human_answer(self, step_id: str, question: str) -> Optional[DecisionValue]:
        return self.decisions.get(step_id, {}).get(question)

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()
        self.refresh_progress()

    def refresh_progress(self) -> None:
        if self.total_steps <= 0:
            self.progress_percentage = 100.0 if self.status == RunStatus.COMPLETE else 0.0
            return
        done = len(self.completed_step_ids)
        self.progress_percentage = round(100.0 * done / self.total_steps, 2)


class ExecutionOptions(BaseModel):
    """Per-run options that survive a process restart."""

    max_escalations: int = DEFAULT_MAX_ESCALATIONS
    timeout: Optional[float] = DEFAULT_RUN_TIMEOUT_SECONDS
    retry: RetryConfig = Field(default_factory=RetryConfig)
    auto_accept_review: bool = True
    parallel_batches: bool = False


class StepSnapshot(BaseModel):
    """Read-only view of a step handed to hooks."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    workflow_name: str
    step_id: str
    step_number: int
    total_steps: int
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Optional[Dict[str, Any]] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class WorkflowEvent(BaseModel):
    """Notification emitted for external observers."""

    kind: str
    run_id: str
    workflow_name: Optional[str] = None
    old_status: Optional[RunStatus] = None
    new_status: Optional[RunStatus] = None
    step_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowResult(BaseModel):
    """Outcome handed back to callers of ``start`` and ``resume``."""

    run_id: str
    workflow_name: str
    status: RunStatus
    variables: Dict[str, Any] = Field(default_factory=dict)
    completed_step_ids: List[str] = Field(default_factory=list)
    progress_percentage: float = 0.0
    escalation_count: int = 0
    max_escalations: int = DEFAULT_MAX_ESCALATIONS
    pending_escalation_id: Optional[str] = None
    paused: bool = False
    error: Optional[ErrorSummary] = None

    @property
    def escalation_budget_exceeded(self) -> bool:
        return self.escalation_count > self.max_escalations

    @classmethod
    def from_state(
        cls, state: WorkflowRunState, max_escalations: int
    ) -> "WorkflowResult":
        return cls(
            run_id=state.run_id,
            workflow_name=state.workflow_name,
            status=state.status,
            variables=dict(state.variables),
            completed_step_ids=list(state.completed_step_ids),
            progress_percentage=state.progress_percentage,
            escalation_count=state.escalation_count,
            max_escalations=max_escalations,
            pending_escalation_id=state.pending_escalation_id,
            paused=state.paused,
            error=state.error,
        )

    def raise_for_status(self) -> "WorkflowResult":
        """Raise ``WorkflowFailure`` if the run failed."""
        if self.status == RunStatus.FAILED:
            summary = self.error
            message = (
                f"Run {self.run_id} failed at step {summary.step_id}: {summary.message}"
                if summary
                else f"Run {self.run_id} failed"
            )
            raise WorkflowFailure(
                message,
                run_id=self.run_id,
                context=summary.model_dump() if summary else {},
            )
        return self


class SignalMessage(BaseModel):
    """Envelope exchanged over the signal transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["resume"] = "resume"
    run_id: str
    escalation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "SignalMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
