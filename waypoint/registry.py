"""Lookup of step executors by name or import path."""

from __future__ import annotations

import importlib
import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict

from .errors import WorkflowValidationError

if TYPE_CHECKING:
    from .context import StepContext

StepExecutor = Callable[[Dict[str, Any], "StepContext"], Awaitable[Dict[str, Any]]]


class ExecutorRegistry:
    """Map action names to async step executors.

    Actions not registered by name are imported from ``"module:attribute"``.
    """

    def __init__(self) -> None:
        self._executors: Dict[str, StepExecutor] = {}

    def register(self, name: str, executor: StepExecutor | None = None):
        """Register ``executor`` under ``name``; usable as a decorator."""

        def decorator(fn: StepExecutor) -> StepExecutor:
            if not inspect.iscoroutinefunction(fn):
                raise TypeError(f"Executor {name} must be an async function")
            self._executors[name] = fn
            return fn

        if executor is not None:
            return decorator(executor)
        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._executors

    def resolve(self, action: str) -> StepExecutor:
        if action in self._executors:
            return self._executors[action]
        if ":" not in action:
            raise WorkflowValidationError(
                f"No executor registered for action '{action}'",
                context={"action": action, "registered": sorted(self._executors)},
            )
        module_name, _, attr = action.partition(":")
        try:
            module = importlib.import_module(module_name)
            executor = getattr(module, attr)
        except (ImportError, AttributeError) as e:
            raise WorkflowValidationError(
                f"Cannot import executor '{action}': {e}",
                context={"action": action},
                cause=e,
            )
        self._executors[action] = executor
        return executor
