"""Repository abstractions for run state and escalation persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import RunStatus, WorkflowRunState
from .models import (
    CategoryKey,
    Checkpoint,
    Escalation,
    EscalationFilter,
    EscalationMetrics,
    EscalationStatus,
    RunRecord,
)


class WorkflowRepository(Protocol):
    """Protocol for run record and checkpoint persistence backends."""

    async def save_run(self, record: RunRecord) -> None:
        """Insert or replace the status record of a run."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve the status record of a run by id."""

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[RunRecord]:
        """Return persisted runs, optionally filtered by status."""

    async def save_checkpoint(
        self,
        state: WorkflowRunState,
        created_at_step_id: Optional[str] = None,
        reason: str = "",
    ) -> Checkpoint:
        """Append a checkpoint with the next sequence number for the run."""

    async def latest_checkpoint(self, run_id: str) -> Checkpoint | None:
        """Return the checkpoint with the highest sequence."""

    async def get_checkpoint(self, run_id: str, sequence: int) -> Checkpoint | None:
        """Return a specific checkpoint."""

    async def list_checkpoints(self, run_id: str) -> list[Checkpoint]:
        """Return retained checkpoints ordered by sequence."""

    async def prune_checkpoints(self, run_id: str, keep: int) -> int:
        """Delete all but the ``keep`` newest checkpoints; return deleted count."""


class EscalationStore(Protocol):
    """Protocol for durable escalation storage."""

    async def create(self, escalation: Escalation) -> None:
        """Persist a new escalation; durable before returning."""

    async def get(self, escalation_id: str) -> Escalation | None:
        """Retrieve an escalation by id."""

    async def replace_if_status(
        self, escalation: Escalation, expected: EscalationStatus
    ) -> bool:
        """Atomically replace a record only if its stored status is ``expected``."""

    async def list(self, filters: EscalationFilter | None = None) -> list[Escalation]:
        """Return escalations matching ``filters`` ordered by creation time."""

    async def metrics(self, category_key: CategoryKey = "workflow_name") -> EscalationMetrics:
        """Aggregate statistics over all stored escalations."""
