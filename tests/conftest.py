import json
from typing import List, Optional

import pytest

from waypoint.config import DecisionConfig, EngineConfig, RetryConfig, WaypointConfig
from waypoint.decision import DecisionEngine, Generation, KnowledgeBase
from waypoint.engine import WorkflowEngine
from waypoint.escalation import EscalationCoordinator
from waypoint.notifications import CollectingNotificationSink
from waypoint.persistence import InMemoryEscalationStore, InMemoryWorkflowRepository
from waypoint.registry import ExecutorRegistry
from waypoint.transports import InMemoryTransport
from waypoint.workspaces import DirectoryWorkspaceManager


class ScriptedBackend:
    """Generative backend returning canned replies in order."""

    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.prompts: List[str] = []
        self.temperatures: List[float] = []

    async def generate(self, prompt: str, temperature: float) -> Generation:
        self.prompts.append(prompt)
        self.temperatures.append(temperature)
        text = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return Generation(text=text)


def reply(decision, confidence: float, reasoning: str = "Based on the context given.") -> str:
    return json.dumps(
        {"decision": decision, "confidence": confidence, "reasoning": reasoning}
    )


def fast_config(**engine_overrides) -> WaypointConfig:
    engine = EngineConfig(
        retry=RetryConfig(max_retries=3, initial_delay=0, jitter=0), **engine_overrides
    )
    return WaypointConfig(decision=DecisionConfig(), engine=engine)


@pytest.fixture
def registry() -> ExecutorRegistry:
    return ExecutorRegistry()


@pytest.fixture
def events() -> CollectingNotificationSink:
    return CollectingNotificationSink()


@pytest.fixture
def make_engine(tmp_path, registry, events):
    """Build an in-memory engine around a decision backend and knowledge corpus."""

    def _make(
        backend: Optional[ScriptedBackend] = None,
        documents: Optional[dict] = None,
        repository=None,
        store=None,
        config: Optional[WaypointConfig] = None,
        **engine_overrides,
    ) -> WorkflowEngine:
        config = config or fast_config(**engine_overrides)
        transport = InMemoryTransport()
        coordinator = EscalationCoordinator(
            store or InMemoryEscalationStore(), transport=transport, notifier=events
        )
        return WorkflowEngine(
            registry,
            repository=repository or InMemoryWorkflowRepository(),
            escalations=coordinator,
            decision_engine=DecisionEngine(
                backend=backend,
                knowledge=KnowledgeBase(documents or {}),
                config=config.decision,
            ),
            transport=transport,
            workspace_manager=DirectoryWorkspaceManager(tmp_path / "workspaces"),
            notifier=events,
            config=config,
        )

    return _make


@pytest.fixture
def scripted():
    """Factory for scripted generative backends."""
    return ScriptedBackend


@pytest.fixture(name="reply")
def reply_fixture():
    """Builder for JSON replies from a generative backend."""
    return reply
