"""Data models for persisted run, checkpoint and escalation records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import (
    DecisionValue,
    ExecutionOptions,
    WorkflowDefinition,
    WorkflowRunState,
    unwrap_value,
    utcnow,
)


class RunRecord(BaseModel):
    """Persisted workflow-status record for one run."""

    state: WorkflowRunState
    definition: WorkflowDefinition
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)

    @property
    def run_id(self) -> str:
        return self.state.run_id


class Checkpoint(BaseModel):
    """Immutable, ordered snapshot of a run state."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    sequence: int = Field(ge=1)
    created_at_step_id: Optional[str] = None
    reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    state: WorkflowRunState

    def restore(self) -> WorkflowRunState:
        """Return an independent copy of the captured state."""
        return self.state.model_copy(deep=True)


class EscalationStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class Escalation(BaseModel):
    """Durable record of a decision awaiting a human."""

    id: str
    workflow_run_id: str
    workflow_name: str = ""
    step_id: str
    question: str
    ai_reasoning: str = ""
    confidence: float = Field(ge=0, le=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    status: EscalationStatus = EscalationStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    response: Optional[DecisionValue] = None
    resolution_time_ms: Optional[int] = None

    @property
    def response_value(self) -> Any:
        return unwrap_value(self.response)


CategoryKey = Literal["workflow_name", "workflow_run_id", "step_id", "status"]


class EscalationFilter(BaseModel):
    """Query filters for listing escalations."""

    status: Optional[EscalationStatus] = None
    workflow_run_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class EscalationMetrics(BaseModel):
    """Aggregate escalation statistics."""

    total_escalations: int = 0
    resolved_count: int = 0
    average_resolution_time_ms: int = 0
    category_breakdown: Dict[str, int] = Field(default_factory=dict)
