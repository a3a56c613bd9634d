"""Tests for run state transitions and decision values."""

import pytest

from waypoint.contracts import (
    BooleanValue,
    ErrorSummary,
    MapValue,
    NumberValue,
    RunStatus,
    SignalMessage,
    StringValue,
    WorkflowResult,
    WorkflowRunState,
    to_decision_value,
)
from waypoint.errors import InvalidStateTransitionError, WorkflowFailure


def test_happy_path_transitions_stamp_timestamps():
    state = WorkflowRunState(workflow_name="wf", total_steps=2)
    assert state.transition(RunStatus.IN_PROGRESS) == RunStatus.NOT_STARTED
    assert state.started_at is not None

    state.transition(RunStatus.AWAITING_ESCALATION)
    state.transition(RunStatus.IN_PROGRESS)
    state.mark_step_complete("a", {"x": 1})
    state.mark_step_complete("b", {})
    state.transition(RunStatus.REVIEW)
    state.transition(RunStatus.COMPLETE)

    assert state.completed_at is not None
    assert state.completed_at >= state.started_at
    assert state.progress_percentage == 100.0
    assert state.is_terminal


@pytest.mark.parametrize(
    "path",
    [
        [RunStatus.COMPLETE],
        [RunStatus.AWAITING_ESCALATION],
        [RunStatus.IN_PROGRESS, RunStatus.COMPLETE],
        [RunStatus.IN_PROGRESS, RunStatus.FAILED, RunStatus.IN_PROGRESS],
    ],
)
def test_invalid_transitions_raise(path):
    state = WorkflowRunState(workflow_name="wf")
    with pytest.raises(InvalidStateTransitionError) as exc:
        for status in path:
            state.transition(status)
    assert exc.value.context["requested"] == path[-1].value


def test_every_open_state_can_fail():
    for path in (
        [],
        [RunStatus.IN_PROGRESS],
        [RunStatus.IN_PROGRESS, RunStatus.AWAITING_ESCALATION],
        [RunStatus.IN_PROGRESS, RunStatus.REVIEW],
    ):
        state = WorkflowRunState(workflow_name="wf")
        for status in path:
            state.transition(status)
        state.transition(RunStatus.FAILED)
        assert state.status == RunStatus.FAILED


def test_review_can_reopen():
    state = WorkflowRunState(workflow_name="wf")
    state.transition(RunStatus.IN_PROGRESS)
    state.transition(RunStatus.REVIEW)
    assert state.transition(RunStatus.IN_PROGRESS) == RunStatus.REVIEW


def test_progress_rounds_to_two_decimals():
    state = WorkflowRunState(workflow_name="wf", total_steps=3)
    state.mark_step_complete("a", {})
    assert state.progress_percentage == 33.33
    state.mark_step_complete("a", {})
    assert state.completed_step_ids == ["a"]


def test_decision_values_are_tagged():
    assert to_decision_value("B") == StringValue(value="B")
    assert to_decision_value(True) == BooleanValue(value=True)
    assert to_decision_value(3) == NumberValue(value=3)
    assert to_decision_value({"k": 1}) == MapValue(value={"k": 1})
    assert to_decision_value([1, 2]).unwrap() == {"items": [1, 2]}
    assert to_decision_value(None) is None

    state = WorkflowRunState(workflow_name="wf")
    state.record_human_answer("s", "Deploy now?", to_decision_value(False))
    restored = WorkflowRunState.model_validate_json(state.model_dump_json())
    assert isinstance(restored.human_answer("s", "Deploy now?"), BooleanValue)
    assert restored.human_answer("s", "Deploy later?") is None
    assert restored.variables["decisions"] == {"s": False}


def test_result_raise_for_status():
    state = WorkflowRunState(workflow_name="wf")
    state.transition(RunStatus.FAILED)
    state.error = ErrorSummary(
        step_id="s", error_type="ValueError", classification="permanent", message="bad"
    )
    result = WorkflowResult.from_state(state, max_escalations=3)

    with pytest.raises(WorkflowFailure) as exc:
        result.raise_for_status()
    assert exc.value.run_id == state.run_id
    assert exc.value.context["step_id"] == "s"


def test_escalation_budget_is_advisory():
    state = WorkflowRunState(workflow_name="wf", escalation_count=4)
    assert WorkflowResult.from_state(state, max_escalations=3).escalation_budget_exceeded
    assert not WorkflowResult.from_state(state, max_escalations=4).escalation_budget_exceeded


def test_signal_message_json():
    message = SignalMessage(run_id="r1", escalation_id="esc-1")
    assert SignalMessage.from_json(message.to_json()) == message
