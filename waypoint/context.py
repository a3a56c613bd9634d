"""Per-step context handed to executors."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .contracts import Decision, DecisionSource, StepSpec, WorkflowRunState
from .decision import DecisionEngine
from .errors import GenerationError

logger = logging.getLogger(__name__)


class EscalationRequired(Exception):
    """Raised inside a step when a decision needs a human.

    Caught by the engine, which parks the run; executors should let it pass.
    """

    def __init__(self, question: str, decision: Decision) -> None:
        super().__init__(question)
        self.question = question
        self.decision = decision


class StepContext:
    """What a step executor can see and ask for while it runs."""

    def __init__(
        self,
        state: WorkflowRunState,
        step: StepSpec,
        decision_engine: DecisionEngine,
        attempt: int = 0,
    ) -> None:
        self._state = state
        self.step = step
        self.decision_engine = decision_engine
        self.attempt = attempt
        self.decisions: list[Decision] = []

    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def workflow_name(self) -> str:
        return self._state.workflow_name

    @property
    def step_id(self) -> str:
        return self.step.id

    @property
    def variables(self) -> Dict[str, Any]:
        """Copy of the run variables (outputs of finished steps)."""
        return dict(self._state.variables)

    @property
    def workspace_path(self) -> Optional[Path]:
        ws = self._state.workspace
        return Path(ws.path) if ws and ws.path else None

    async def decide(self, question: str, context: Optional[Dict[str, Any]] = None) -> Any:
        """Return an answer to ``question`` or park the run for a human.

        A human answer recorded for this step and question wins over a fresh
        attempt; other questions go to the decision engine.
        """
        answer = self._state.human_answer(self.step.id, question)
        if answer is not None:
            logger.info(f"Step {self.step.id} using human decision for {question!r}")
            decision = Decision(
                question=question,
                decision=answer,
                confidence=1.0,
                reasoning="Answered through escalation",
                source=DecisionSource.HUMAN,
                context=dict(context or {}),
            )
            self.decisions.append(decision)
            return decision.value

        try:
            decision = await self.decision_engine.attempt_decision(question, context)
        except GenerationError as e:
            logger.warning(f"Decision backend failed for step {self.step.id}: {e}")
            decision = Decision(
                question=question,
                confidence=0.0,
                reasoning=f"Generative backend failed: {e.message}",
                source=DecisionSource.UNRESOLVED,
                context=dict(context or {}),
            )

        self.decisions.append(decision)
        if self.decision_engine.requires_escalation(decision):
            raise EscalationRequired(question, decision)
        return decision.value
