"""Waypoint: checkpointed workflow runs with confidence-gated human escalation."""

from .context import StepContext
from .contracts import (
    Decision,
    DecisionSource,
    ExecutionOptions,
    RunStatus,
    StepSpec,
    WorkflowDefinition,
    WorkflowResult,
    WorkflowRunState,
)
from .decision import DecisionEngine, Generation, KnowledgeBase, PydanticAIBackend
from .engine import WorkflowEngine
from .escalation import EscalationCoordinator
from .persistence import get_escalation_store, get_repository
from .plan import build_execution_plan, load_definition
from .registry import ExecutorRegistry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "Decision",
    "DecisionEngine",
    "DecisionSource",
    "EscalationCoordinator",
    "ExecutionOptions",
    "ExecutorRegistry",
    "Generation",
    "KnowledgeBase",
    "PydanticAIBackend",
    "RunStatus",
    "StepContext",
    "StepSpec",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowResult",
    "WorkflowRunState",
    "build_execution_plan",
    "get_escalation_store",
    "get_repository",
    "get_transport",
    "load_definition",
]
