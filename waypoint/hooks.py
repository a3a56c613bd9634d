"""Best-effort pre/post step hooks."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Tuple, Union

from pydantic import BaseModel

from .contracts import StepSnapshot

logger = logging.getLogger(__name__)

HookPhase = Literal["pre_step", "post_step"]
StepHook = Callable[[StepSnapshot], Union[None, Awaitable[None]]]


class HookFailure(BaseModel):
    phase: str
    hook: str
    step_id: str
    error_type: str
    message: str


def _hook_name(hook: StepHook) -> str:
    return getattr(hook, "__qualname__", None) or repr(hook)


class HookDispatcher:
    """Ordered hook lists per phase, delivered through an ``asyncio.Queue``.

    A hook that raises is logged and reported; later hooks and the step
    itself still run.
    """

    def __init__(self) -> None:
        self._hooks: Dict[str, List[StepHook]] = {"pre_step": [], "post_step": []}

    def register(self, phase: HookPhase, hook: StepHook) -> StepHook:
        if phase not in self._hooks:
            raise ValueError(f"Unknown hook phase: {phase}")
        self._hooks[phase].append(hook)
        return hook

    def hooks(self, phase: HookPhase) -> List[StepHook]:
        return list(self._hooks[phase])

    async def dispatch(self, phase: HookPhase, snapshot: StepSnapshot) -> List[HookFailure]:
        queue: asyncio.Queue[Tuple[StepHook, StepSnapshot]] = asyncio.Queue()
        for hook in self._hooks[phase]:
            queue.put_nowait((hook, snapshot))

        failures: List[HookFailure] = []
        while not queue.empty():
            hook, payload = queue.get_nowait()
            try:
                result: Any = hook(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failure = HookFailure(
                    phase=phase,
                    hook=_hook_name(hook),
                    step_id=payload.step_id,
                    error_type=type(e).__name__,
                    message=str(e),
                )
                logger.warning(
                    f"{phase} hook {failure.hook} failed for step {payload.step_id} "
                    f"of run {payload.run_id}: {e}"
                )
                failures.append(failure)
            finally:
                queue.task_done()
        return failures
