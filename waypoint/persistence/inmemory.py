"""In-memory implementations of the run and escalation repositories."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Set

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
from .repository import EscalationStore, WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store run records and checkpoints in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._checkpoints: Dict[str, List[Checkpoint]] = defaultdict(list)
        self._sequences: Dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    async def save_run(self, record: RunRecord) -> None:
        self._runs[record.run_id] = record.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunRecord | None:
        record = self._runs.get(run_id)
        return record.model_copy(deep=True) if record else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[RunRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if status is None or r.state.status == status
        ]

    async def save_checkpoint(
        self,
        state: WorkflowRunState,
        created_at_step_id: Optional[str] = None,
        reason: str = "",
    ) -> Checkpoint:
        self._sequences[state.run_id] += 1
        checkpoint = Checkpoint(
            run_id=state.run_id,
            sequence=self._sequences[state.run_id],
            created_at_step_id=created_at_step_id,
            reason=reason,
            state=state.model_copy(deep=True),
        )
        self._checkpoints[state.run_id].append(checkpoint)
        return checkpoint

    async def latest_checkpoint(self, run_id: str) -> Checkpoint | None:
        chain = self._checkpoints.get(run_id)
        return chain[-1] if chain else None

    async def get_checkpoint(self, run_id: str, sequence: int) -> Checkpoint | None:
        for checkpoint in self._checkpoints.get(run_id, []):
            if checkpoint.sequence == sequence:
                return checkpoint
        return None

    async def list_checkpoints(self, run_id: str) -> list[Checkpoint]:
        return list(self._checkpoints.get(run_id, []))

    async def prune_checkpoints(self, run_id: str, keep: int) -> int:
        chain = self._checkpoints.get(run_id, [])
        if len(chain) <= keep:
            return 0
        removed = len(chain) - keep
        self._checkpoints[run_id] = chain[-keep:]
        return removed


class InMemoryEscalationStore(EscalationStore):
    """Keep escalations in local memory, indexed by status and run id."""

    def __init__(self) -> None:
        self._escalations: Dict[str, Escalation] = {}
        self._by_status: Dict[EscalationStatus, Set[str]] = defaultdict(set)
        self._by_run: Dict[str, List[str]] = defaultdict(list)

    async def create(self, escalation: Escalation) -> None:
        if escalation.id in self._escalations:
            raise ValueError(f"Escalation {escalation.id} already exists")
        self._escalations[escalation.id] = escalation.model_copy(deep=True)
        self._by_status[escalation.status].add(escalation.id)
        self._by_run[escalation.workflow_run_id].append(escalation.id)

    async def get(self, escalation_id: str) -> Escalation | None:
        escalation = self._escalations.get(escalation_id)
        return escalation.model_copy(deep=True) if escalation else None

    async def replace_if_status(
        self, escalation: Escalation, expected: EscalationStatus
    ) -> bool:
        current = self._escalations.get(escalation.id)
        if current is None or current.status != expected:
            return False
        self._by_status[current.status].discard(escalation.id)
        self._escalations[escalation.id] = escalation.model_copy(deep=True)
        self._by_status[escalation.status].add(escalation.id)
        return True

    async def list(self, filters: EscalationFilter | None = None) -> list[Escalation]:
        filters = filters or EscalationFilter()
        if filters.workflow_run_id is not None:
            ids = self._by_run.get(filters.workflow_run_id, [])
        elif filters.status is not None:
            ids = self._by_status.get(filters.status, set())
        else:
            ids = self._escalations.keys()

        matches = [
            self._escalations[i]
            for i in ids
            if filters.status is None or self._escalations[i].status == filters.status
        ]
        matches.sort(key=lambda e: e.created_at)
        if filters.limit is not None:
            matches = matches[: filters.limit]
        return [e.model_copy(deep=True) for e in matches]

    async def metrics(self, category_key: CategoryKey = "workflow_name") -> EscalationMetrics:
        total = 0
        resolved = 0
        resolution_total = 0
        breakdown: Dict[str, int] = defaultdict(int)
        for escalation in self._escalations.values():
            total += 1
            if escalation.status == EscalationStatus.RESOLVED:
                resolved += 1
                resolution_total += escalation.resolution_time_ms or 0
            key = getattr(escalation, category_key)
            breakdown[key.value if isinstance(key, EscalationStatus) else str(key)] += 1
        return EscalationMetrics(
            total_escalations=total,
            resolved_count=resolved,
            average_resolution_time_ms=round(resolution_total / resolved) if resolved else 0,
            category_breakdown=dict(breakdown),
        )
