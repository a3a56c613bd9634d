"""Escalation coordinator: durable human-decision queue with resume signals."""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from typing import Any, Callable, Dict, Optional, Union

from .constants import ESCALATION_ID_PREFIX, RESUME_TOPIC
from .contracts import Decision, SignalMessage, WorkflowEvent, to_decision_value, utcnow
from .errors import (
    EscalationAlreadyResolvedError,
    EscalationNotFoundError,
    EscalationStateError,
    WorkflowValidationError,
)
from .notifications import NotificationSink, emit
from .persistence.models import (
    CategoryKey,
    Escalation,
    EscalationFilter,
    EscalationMetrics,
    EscalationStatus,
)
from .persistence.repository import EscalationStore
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)

CategoryFn = Callable[[Escalation], str]


class EscalationCoordinator:
    """Create, resolve and query escalations.

    Resolving an escalation publishes exactly one ``resume`` signal on the
    transport; the store's conditional update keeps a second response from
    overwriting the first.
    """

    def __init__(
        self,
        store: EscalationStore,
        transport: Optional[BaseTransport] = None,
        notifier: Optional[NotificationSink] = None,
        topic: str = RESUME_TOPIC,
    ) -> None:
        self.store = store
        self.transport = transport
        self.notifier = notifier
        self.topic = topic

    async def add(
        self,
        workflow_run_id: str,
        step_id: str,
        question: str,
        decision: Decision,
        workflow_name: str = "",
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not workflow_run_id:
            raise WorkflowValidationError("Escalation requires a workflow run id")
        if not question or not question.strip():
            raise WorkflowValidationError(
                "Escalation requires a non-empty question",
                context={"workflow_run_id": workflow_run_id, "step_id": step_id},
            )
        if not 0 <= decision.confidence <= 1:
            raise WorkflowValidationError(
                f"Confidence must be within [0, 1], got {decision.confidence}",
                context={"workflow_run_id": workflow_run_id},
            )

        escalation = Escalation(
            id=f"{ESCALATION_ID_PREFIX}{uuid.uuid4()}",
            workflow_run_id=workflow_run_id,
            workflow_name=workflow_name,
            step_id=step_id,
            question=question,
            ai_reasoning=decision.reasoning,
            confidence=decision.confidence,
            context={**decision.context, **(context or {})},
        )
        await self.store.create(escalation)
        logger.info(
            f"Escalation {escalation.id} created for run {workflow_run_id} step {step_id} "
            f"(confidence {decision.confidence:.2f})"
        )
        await emit(
            self.notifier,
            WorkflowEvent(
                kind="escalation_created",
                run_id=workflow_run_id,
                workflow_name=workflow_name or None,
                step_id=step_id,
                data={"escalation_id": escalation.id, "question": question},
            ),
        )
        return escalation.id

    async def get_by_id(self, escalation_id: str) -> Optional[Escalation]:
        return await self.store.get(escalation_id)

    async def _require(self, escalation_id: str) -> Escalation:
        escalation = await self.store.get(escalation_id)
        if escalation is None:
            raise EscalationNotFoundError(
                f"Escalation not found: {escalation_id}",
                context={"escalation_id": escalation_id},
            )
        return escalation

    @staticmethod
    def _check_pending(escalation: Escalation) -> None:
        if escalation.status == EscalationStatus.RESOLVED:
            raise EscalationAlreadyResolvedError(
                f"Escalation already resolved: {escalation.id}",
                context={
                    "escalation_id": escalation.id,
                    "resolved_at": escalation.resolved_at.isoformat()
                    if escalation.resolved_at
                    else None,
                },
            )
        if escalation.status != EscalationStatus.PENDING:
            raise EscalationStateError(
                f"Escalation {escalation.id} is {escalation.status.value}",
                context={"escalation_id": escalation.id, "status": escalation.status.value},
            )

    async def respond(self, escalation_id: str, response: Any) -> Escalation:
        """Record the human ``response`` and signal the parked run."""
        if response is None:
            raise WorkflowValidationError(
                "Escalation response must not be empty",
                context={"escalation_id": escalation_id},
            )
        escalation = await self._require(escalation_id)
        self._check_pending(escalation)

        resolved_at = utcnow()
        elapsed = resolved_at - escalation.created_at
        updated = escalation.model_copy(
            update={
                "status": EscalationStatus.RESOLVED,
                "response": to_decision_value(response),
                "resolved_at": resolved_at,
                "resolution_time_ms": max(0, round(elapsed.total_seconds() * 1000)),
            }
        )
        if not await self.store.replace_if_status(updated, EscalationStatus.PENDING):
            # lost the race; report whatever state won
            self._check_pending(await self._require(escalation_id))
            raise EscalationStateError(
                f"Escalation {escalation_id} changed concurrently",
                context={"escalation_id": escalation_id},
            )

        logger.info(
            f"Escalation {escalation_id} resolved in {updated.resolution_time_ms}ms"
        )
        if self.transport is not None:
            await self.transport.publish(
                self.topic,
                SignalMessage(
                    run_id=updated.workflow_run_id,
                    escalation_id=updated.id,
                    payload={"step_id": updated.step_id},
                ),
            )
        await emit(
            self.notifier,
            WorkflowEvent(
                kind="escalation_resolved",
                run_id=updated.workflow_run_id,
                workflow_name=updated.workflow_name or None,
                step_id=updated.step_id,
                data={"escalation_id": updated.id},
            ),
        )
        return updated

    async def cancel(self, escalation_id: str) -> Escalation:
        escalation = await self._require(escalation_id)
        self._check_pending(escalation)
        updated = escalation.model_copy(
            update={"status": EscalationStatus.CANCELLED, "resolved_at": utcnow()}
        )
        if not await self.store.replace_if_status(updated, EscalationStatus.PENDING):
            self._check_pending(await self._require(escalation_id))
            raise EscalationStateError(
                f"Escalation {escalation_id} changed concurrently",
                context={"escalation_id": escalation_id},
            )
        logger.info(f"Escalation {escalation_id} cancelled")
        return updated

    async def list(
        self,
        status: Optional[EscalationStatus] = None,
        workflow_run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Escalation]:
        return await self.store.list(
            EscalationFilter(status=status, workflow_run_id=workflow_run_id, limit=limit)
        )

    async def get_metrics(
        self, category: Union[CategoryKey, CategoryFn] = "workflow_name"
    ) -> EscalationMetrics:
        """Aggregate statistics, broken down by a field name or a callable."""
        if not callable(category):
            return await self.store.metrics(category)

        metrics = await self.store.metrics()
        breakdown = Counter(category(e) for e in await self.store.list())
        return metrics.model_copy(update={"category_breakdown": dict(breakdown)})
