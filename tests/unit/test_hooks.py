"""Tests for step hook dispatch."""

import pytest

from waypoint.contracts import StepSnapshot
from waypoint.hooks import HookDispatcher


def _snapshot():
    return StepSnapshot(run_id="r1", workflow_name="wf", step_id="s1", step_number=1, total_steps=2)


@pytest.mark.asyncio
async def test_hooks_run_in_order_and_failures_are_isolated():
    dispatcher = HookDispatcher()
    calls = []

    async def first(snapshot):
        calls.append(("first", snapshot.step_id))

    def broken(snapshot):
        raise RuntimeError("hook exploded")

    async def last(snapshot):
        calls.append(("last", snapshot.step_number))

    for hook in (first, broken, last):
        dispatcher.register("pre_step", hook)

    failures = await dispatcher.dispatch("pre_step", _snapshot())

    assert calls == [("first", "s1"), ("last", 1)]
    assert len(failures) == 1
    assert failures[0].error_type == "RuntimeError"
    assert failures[0].hook.endswith("broken")
    assert await dispatcher.dispatch("post_step", _snapshot()) == []


def test_unknown_phase_rejected():
    with pytest.raises(ValueError):
        HookDispatcher().register("mid_step", lambda s: None)
