"""Workflow definition loading, validation and execution planning."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

import yaml
from pydantic import ValidationError

from .constants import DECISIONS_VARIABLE
from .contracts import ExecutionPlan, WorkflowDefinition
from .errors import WorkflowValidationError

logger = logging.getLogger(__name__)


def load_definition(source: Union[str, Path, Mapping[str, Any]]) -> WorkflowDefinition:
    """Load and validate a workflow definition from a YAML file or mapping.

    Raises:
        WorkflowValidationError: If the file is missing, unparsable, or the
            definition is structurally invalid.
    """
    if isinstance(source, Mapping):
        data: Any = dict(source)
        origin = "<mapping>"
    else:
        origin = str(source)
        try:
            with open(source) as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise WorkflowValidationError(
                f"Workflow definition file not found: {origin}",
                context={"path": origin},
                cause=e,
            )
        except yaml.YAMLError as e:
            raise WorkflowValidationError(
                f"Failed to parse workflow YAML: {e}",
                context={"path": origin},
                cause=e,
            )

    if not isinstance(data, dict):
        raise WorkflowValidationError(
            "Workflow definition must be a mapping", context={"path": origin}
        )

    try:
        definition = WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise WorkflowValidationError(
            f"Invalid workflow definition: {e.error_count()} error(s)",
            context={
                "path": origin,
                "errors": [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            },
            cause=e,
        )

    validate_definition(definition)
    logger.info(f"Loaded workflow {definition.name} from {origin}")
    return definition


def validate_definition(definition: WorkflowDefinition) -> None:
    """Reject duplicate ids, unknown dependencies and dependency cycles."""
    if not definition.steps:
        raise WorkflowValidationError(
            f"Workflow {definition.name} has no steps",
            context={"workflow": definition.name},
        )

    seen: set[str] = set()
    for step in definition.steps:
        if step.id == DECISIONS_VARIABLE:
            raise WorkflowValidationError(
                f"Step id {step.id!r} is reserved for human answers",
                context={"workflow": definition.name, "step_id": step.id},
            )
        if step.id in seen:
            raise WorkflowValidationError(
                f"Duplicate step id: {step.id}",
                context={"workflow": definition.name, "step_id": step.id},
            )
        seen.add(step.id)

    for step in definition.steps:
        unknown = sorted(step.dependencies - seen)
        if unknown:
            raise WorkflowValidationError(
                f"Step {step.id} depends on unknown steps: {', '.join(unknown)}",
                context={"workflow": definition.name, "step_id": step.id, "unknown": unknown},
            )
        if step.id in step.dependencies:
            raise WorkflowValidationError(
                f"Step {step.id} depends on itself",
                context={"workflow": definition.name, "step_id": step.id},
            )

    cycle = _find_cycle(definition)
    if cycle:
        raise WorkflowValidationError(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            context={"workflow": definition.name, "cycle": cycle},
        )


def _find_cycle(definition: WorkflowDefinition) -> List[str]:
    """Return one dependency cycle as a list of step ids, or an empty list."""
    deps: Dict[str, List[str]] = {
        step.id: sorted(step.dependencies) for step in definition.steps
    }
    white, grey, black = 0, 1, 2
    color = {step_id: white for step_id in deps}
    stack: List[str] = []

    def visit(node: str) -> List[str]:
        color[node] = grey
        stack.append(node)
        for dep in deps[node]:
            if color[dep] == grey:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == white:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = black
        return []

    for step_id in deps:
        if color[step_id] == white:
            found = visit(step_id)
            if found:
                return found
    return []


def build_execution_plan(definition: WorkflowDefinition) -> ExecutionPlan:
    """Topologically sort steps into batches.

    Each batch holds the steps whose dependencies are all satisfied by earlier
    batches; within a batch, definition order is kept.
    """
    validate_definition(definition)

    remaining = {step.id: set(step.dependencies) for step in definition.steps}
    order = definition.step_ids
    done: set[str] = set()
    batches: List[List[str]] = []

    while remaining:
        ready = [sid for sid in order if sid in remaining and remaining[sid] <= done]
        if not ready:  # pragma: no cover - guarded by validate_definition
            raise WorkflowValidationError(
                f"Unresolvable dependencies in workflow {definition.name}",
                context={"remaining": sorted(remaining)},
            )
        batches.append(ready)
        for sid in ready:
            del remaining[sid]
        done.update(ready)

    logger.debug(
        f"Execution plan for {definition.name}: {len(batches)} batches, "
        f"{len(order)} steps"
    )
    return ExecutionPlan(workflow_name=definition.name, batches=batches)
