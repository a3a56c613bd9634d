"""Tests for run record and checkpoint repositories."""

import pytest

from waypoint.config import WaypointConfig
from waypoint.contracts import RunStatus, StepSpec, WorkflowDefinition, WorkflowRunState
from waypoint.errors import StoreWriteError
from waypoint.persistence import (
    InMemoryWorkflowRepository,
    RunRecord,
    SQLiteWorkflowRepository,
    get_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryWorkflowRepository()
    else:
        repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
        yield repo
        repo.close()


def _record(run_id="run-1"):
    definition = WorkflowDefinition(name="wf", steps=[StepSpec(id="a", action="noop")])
    state = WorkflowRunState(run_id=run_id, workflow_name="wf", total_steps=1)
    return RunRecord(state=state, definition=definition)


@pytest.mark.asyncio
async def test_run_record_crud(repo):
    record = _record()
    await repo.save_run(record)

    record.state.transition(RunStatus.IN_PROGRESS)
    record.state.variables["a"] = {"x": 1}
    await repo.save_run(record)

    loaded = await repo.get_run("run-1")
    assert loaded.state.status == RunStatus.IN_PROGRESS
    assert loaded.state.variables == {"a": {"x": 1}}
    assert loaded.definition.get_step("a").action == "noop"
    assert await repo.get_run("missing") is None

    assert [r.run_id for r in await repo.list_runs()] == ["run-1"]
    assert await repo.list_runs(RunStatus.COMPLETE) == []


@pytest.mark.asyncio
async def test_checkpoints_are_ordered_and_isolated(repo):
    state = _record().state
    first = await repo.save_checkpoint(state, "a", "pre_step")
    state.mark_step_complete("a", {"x": 1})
    second = await repo.save_checkpoint(state, "a", "post_step")

    assert (first.sequence, second.sequence) == (1, 2)
    latest = await repo.latest_checkpoint(state.run_id)
    assert latest.sequence == 2
    assert latest.restore().completed_step_ids == ["a"]

    # mutating the live state does not touch stored checkpoints
    state.variables["a"]["x"] = 99
    assert (await repo.get_checkpoint(state.run_id, 2)).state.variables["a"]["x"] == 1
    assert (await repo.get_checkpoint(state.run_id, 1)).state.completed_step_ids == []
    assert await repo.latest_checkpoint("other") is None


@pytest.mark.asyncio
async def test_prune_keeps_newest(repo):
    state = _record().state
    for i in range(6):
        await repo.save_checkpoint(state, None, f"cp{i}")

    removed = await repo.prune_checkpoints(state.run_id, keep=2)

    assert removed == 4
    remaining = await repo.list_checkpoints(state.run_id)
    assert [c.sequence for c in remaining] == [5, 6]
    assert (await repo.save_checkpoint(state, None, "next")).sequence == 7


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    record = _record()
    await repo.save_run(record)
    await repo.save_checkpoint(record.state, "a", "pre_step")
    repo.close()

    reopened = SQLiteWorkflowRepository(path)
    assert (await reopened.get_run("run-1")).state.workflow_name == "wf"
    assert (await reopened.latest_checkpoint("run-1")).sequence == 1
    reopened.close()


@pytest.mark.asyncio
async def test_sqlite_write_failure_raises_store_error(tmp_path):
    repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
    repo._conn.execute("DROP TABLE checkpoints")
    with pytest.raises(StoreWriteError):
        await repo.save_checkpoint(_record().state, None, "x")
    repo.close()


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("WAYPOINT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert isinstance(get_repository(config=WaypointConfig()), InMemoryWorkflowRepository)

    sqlite_repo = get_repository(f"sqlite://{tmp_path / 'x.db'}", config=WaypointConfig())
    assert isinstance(sqlite_repo, SQLiteWorkflowRepository)
    sqlite_repo.close()

    with pytest.raises(ValueError):
        get_repository("postgresql://localhost/db", config=WaypointConfig())
