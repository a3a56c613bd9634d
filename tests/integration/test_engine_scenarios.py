"""End-to-end runs: knowledge path, generative escalation, transient failure."""

import pytest

from waypoint.contracts import RunStatus, WorkflowDefinition
from waypoint.errors import TransientStepError, WorkflowFailure
from waypoint.persistence import EscalationStatus

THREE_STEPS = {
    "name": "release",
    "steps": [
        {"id": "step1", "action": "prepare"},
        {"id": "step2", "action": "choose", "dependencies": ["step1"]},
        {"id": "step3", "action": "publish", "dependencies": ["step2"]},
    ],
}


@pytest.fixture
def executors(registry):
    calls = {"prepare": 0, "choose": 0, "publish": 0}

    @registry.register("prepare")
    async def prepare(inputs, ctx):
        calls["prepare"] += 1
        return {"prepared": True}

    @registry.register("choose")
    async def choose(inputs, ctx):
        calls["choose"] += 1
        answer = await ctx.decide("Which release channel should we use?", {"options": ["A", "B"]})
        return {"choice": answer}

    @registry.register("publish")
    async def publish(inputs, ctx):
        calls["publish"] += 1
        return {"published": ctx.variables["step2"]["choice"]}

    return calls


@pytest.mark.asyncio
async def test_knowledge_answer_completes_without_escalation(make_engine, executors, events):
    engine = make_engine(
        documents={"channels.md": "The release channel we use is the stable channel."}
    )

    result = await engine.start(THREE_STEPS)

    assert result.status == RunStatus.COMPLETE
    assert result.escalation_count == 0
    assert result.completed_step_ids == ["step1", "step2", "step3"]
    assert result.progress_percentage == 100.0
    assert "stable channel" in result.variables["step2"]["choice"]
    assert await engine.list_escalations() == []
    assert "state_changed" in events.kinds()
    assert "escalation_created" not in events.kinds()


@pytest.mark.asyncio
async def test_low_confidence_parks_then_human_answer_completes(
    make_engine, executors, scripted, reply
):
    engine = make_engine(backend=scripted(reply("A", 0.6)))

    parked = await engine.start(THREE_STEPS, run_id="run-esc")

    assert parked.status == RunStatus.AWAITING_ESCALATION
    assert parked.completed_step_ids == ["step1"]
    assert parked.escalation_count == 1
    assert executors["publish"] == 0

    escalation = await engine.escalations.get_by_id(parked.pending_escalation_id)
    assert escalation.status == EscalationStatus.PENDING
    assert escalation.step_id == "step2"
    assert escalation.confidence == pytest.approx(0.6)
    assert "ESCALATION REQUIRED" in escalation.ai_reasoning

    result = await engine.respond_to_escalation(escalation.id, "B")

    assert result.status == RunStatus.COMPLETE
    assert result.variables["step2"] == {"choice": "B"}
    assert result.variables["step3"] == {"published": "B"}
    assert result.pending_escalation_id is None
    assert executors["prepare"] == 1
    resolved = await engine.escalations.get_by_id(escalation.id)
    assert resolved.status == EscalationStatus.RESOLVED
    state = await engine.status("run-esc")
    assert state.human_answer("step2", "Which release channel should we use?").unwrap() == "B"
    assert result.variables["decisions"] == {"step2": "B"}


@pytest.mark.asyncio
async def test_resume_with_response(make_engine, executors, scripted, reply):
    engine = make_engine(backend=scripted(reply("A", 0.5)))
    parked = await engine.start(THREE_STEPS)

    result = await engine.resume(parked.run_id, "B")

    assert result.status == RunStatus.COMPLETE
    assert result.variables["step3"] == {"published": "B"}
    # the resume signal published by respond is now stale and ignored
    assert await engine.process_signals() == []


@pytest.mark.asyncio
async def test_transient_failures_exhaust_retries(make_engine, registry, tmp_path):
    attempts = []

    @registry.register("ok")
    async def ok(inputs, ctx):
        return {"done": True}

    @registry.register("flaky")
    async def flaky(inputs, ctx):
        attempts.append(ctx.attempt)
        raise TransientStepError("upstream unavailable")

    definition = WorkflowDefinition.model_validate(
        {
            "name": "flaky",
            "steps": [
                {"id": "step1", "action": "ok"},
                {"id": "step2", "action": "ok", "dependencies": ["step1"]},
                {"id": "step3", "action": "flaky", "dependencies": ["step2"]},
            ],
        }
    )
    engine = make_engine()

    result = await engine.start(definition, run_id="run-flaky")

    assert attempts == [0, 1, 2, 3]
    assert result.status == RunStatus.FAILED
    assert result.error.step_id == "step3"
    assert result.error.classification == "transient"
    assert result.error.retry_count == 3
    assert result.error.error_type == "TransientStepError"
    assert not (tmp_path / "workspaces" / "flaky-run-flaky").exists()

    checkpoints = await engine.repository.list_checkpoints("run-flaky")
    after_step2 = [
        c for c in checkpoints if c.created_at_step_id == "step2" and c.reason == "post_step"
    ]
    assert len(after_step2) == 1
    state = after_step2[0].restore()
    assert state.completed_step_ids == ["step1", "step2"]
    assert state.status == RunStatus.IN_PROGRESS

    # failure rolled back to the pre-step state of step3
    failed = await engine.status("run-flaky")
    assert failed.completed_step_ids == ["step1", "step2"]
    assert "step3" not in failed.variables

    with pytest.raises(WorkflowFailure):
        result.raise_for_status()


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(make_engine, registry):
    attempts = []

    @registry.register("bad")
    async def bad(inputs, ctx):
        attempts.append(ctx.attempt)
        raise ValueError("malformed input")

    engine = make_engine()
    result = await engine.start({"name": "bad", "steps": [{"id": "s", "action": "bad"}]})

    assert attempts == [0]
    assert result.status == RunStatus.FAILED
    assert result.error.classification == "permanent"
    assert result.error.retry_count == 0


@pytest.mark.asyncio
async def test_custom_error_classifier(make_engine, registry):
    attempts = []

    @registry.register("odd")
    async def odd(inputs, ctx):
        attempts.append(ctx.attempt)
        if ctx.attempt < 2:
            raise KeyError("warming up")
        return {"ok": True}

    engine = make_engine()
    result = await engine.start(
        {"name": "odd", "steps": [{"id": "s", "action": "odd"}]},
        error_classifier=lambda e: "transient" if isinstance(e, KeyError) else "permanent",
    )

    assert result.status == RunStatus.COMPLETE
    assert attempts == [0, 1, 2]


@pytest.mark.asyncio
async def test_generation_error_escalates(make_engine, executors):
    class Offline:
        async def generate(self, prompt, temperature):
            raise ConnectionError("model offline")

    engine = make_engine(backend=Offline())
    result = await engine.start(THREE_STEPS)

    assert result.status == RunStatus.AWAITING_ESCALATION
    escalation = (await engine.list_escalations())[0]
    assert escalation.confidence == 0
    assert "model offline" in escalation.ai_reasoning


@pytest.mark.asyncio
async def test_escalation_budget_is_advisory(make_engine, registry, scripted, reply):
    @registry.register("ask")
    async def ask(inputs, ctx):
        return {"answer": await ctx.decide(f"Question for {ctx.step_id}?")}

    steps = [{"id": f"s{i}", "action": "ask"} for i in range(3)]
    engine = make_engine(backend=scripted(reply("maybe", 0.4)))
    options = engine.default_options(max_escalations=1)

    result = await engine.start({"name": "many", "steps": steps}, options=options)
    while result.status == RunStatus.AWAITING_ESCALATION:
        result = await engine.respond_to_escalation(result.pending_escalation_id, "yes")

    assert result.status == RunStatus.COMPLETE
    assert result.escalation_count == 3
    assert result.escalation_budget_exceeded


@pytest.mark.asyncio
async def test_manual_review(make_engine, registry):
    @registry.register("noop")
    async def noop(inputs, ctx):
        return None

    engine = make_engine(auto_accept_review=False)
    result = await engine.start({"name": "r", "steps": [{"id": "s", "action": "noop"}]})
    assert result.status == RunStatus.REVIEW
    assert result.variables["s"] == {}

    accepted = await engine.accept_review(result.run_id)
    assert accepted.status == RunStatus.COMPLETE


@pytest.mark.asyncio
async def test_human_answer_applies_only_to_its_question(make_engine, registry, scripted, reply):
    db_question = "Which database engine should the service use?"
    lang_question = "Which programming language should the service use?"

    @registry.register("design")
    async def design(inputs, ctx):
        db = await ctx.decide(db_question)
        lang = await ctx.decide(lang_question)
        return {"db": db, "lang": lang}

    backend = scripted(reply("mysql", 0.6))
    engine = make_engine(backend=backend)
    parked = await engine.start(
        {"name": "design", "steps": [{"id": "plan", "action": "design"}]}
    )
    first = await engine.escalations.get_by_id(parked.pending_escalation_id)
    assert first.question == db_question

    # the second question still goes to the decision engine and escalates on its own
    reparked = await engine.respond_to_escalation(first.id, "postgres")
    assert reparked.status == RunStatus.AWAITING_ESCALATION
    second = await engine.escalations.get_by_id(reparked.pending_escalation_id)
    assert second.question == lang_question
    assert lang_question in backend.prompts[-1]

    result = await engine.respond_to_escalation(second.id, "python")

    assert result.status == RunStatus.COMPLETE
    assert result.variables["plan"] == {"db": "postgres", "lang": "python"}
    assert result.escalation_count == 2


@pytest.mark.asyncio
async def test_human_answer_is_recorded_in_variables(
    make_engine, registry, scripted, reply, events
):
    @registry.register("ok")
    async def ok(inputs, ctx):
        return {"ready": True}

    @registry.register("confirm")
    async def confirm(inputs, ctx):
        await ctx.decide("Which rollout strategy should we use?")
        return {"done": True}

    engine = make_engine(backend=scripted(reply("A", 0.6)))
    parked = await engine.start(
        {
            "name": "rollout",
            "steps": [
                {"id": "s1", "action": "ok"},
                {"id": "s2", "action": "confirm", "dependencies": ["s1"]},
            ],
        }
    )

    result = await engine.respond_to_escalation(parked.pending_escalation_id, "B")

    assert result.status == RunStatus.COMPLETE
    assert result.variables["s2"] == {"done": True}
    assert result.variables["decisions"] == {"s2": "B"}
    completed = [e for e in events.events if e.kind == "step_completed" and e.step_id == "s2"]
    assert completed[-1].data["decision_sources"] == ["human"]


@pytest.mark.asyncio
async def test_declared_outputs_must_be_produced(make_engine, registry):
    attempts = []

    @registry.register("summarize")
    async def summarize(inputs, ctx):
        attempts.append(ctx.attempt)
        return {"summary": "all green"}

    engine = make_engine()
    ok = await engine.start(
        {"name": "s", "steps": [{"id": "s", "action": "summarize", "outputs": ["summary"]}]}
    )
    assert ok.status == RunStatus.COMPLETE

    attempts.clear()
    result = await engine.start(
        {
            "name": "r",
            "steps": [{"id": "s", "action": "summarize", "outputs": ["summary", "report"]}],
        }
    )

    assert attempts == [0]
    assert result.status == RunStatus.FAILED
    assert result.error.error_type == "PermanentStepError"
    assert result.error.classification == "permanent"
    assert "report" in result.error.message
