"""Workflow engine: runs plans step by step, parks on escalations, resumes."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Set, Union

from .config import WaypointConfig, load_config
from .constants import RESUME_TOPIC
from .context import EscalationRequired, StepContext
from .contracts import (
    Decision,
    ErrorSummary,
    ExecutionOptions,
    ExecutionPlan,
    RunStatus,
    SignalMessage,
    StepSnapshot,
    StepSpec,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowResult,
    WorkflowRunState,
    utcnow,
)
from .decision import DecisionEngine, KnowledgeBase
from .errors import (
    EscalationNotFoundError,
    EscalationStateError,
    InvalidStateTransitionError,
    PermanentStepError,
    RunNotFoundError,
)
from .escalation import EscalationCoordinator
from .hooks import HookDispatcher, StepHook
from .notifications import LoggingNotificationSink, NotificationSink, emit
from .persistence import get_escalation_store, get_repository
from .persistence.models import Escalation, EscalationStatus, RunRecord
from .persistence.repository import WorkflowRepository
from .persistence.status_file import StatusFileWriter
from .plan import build_execution_plan, load_definition
from .registry import ExecutorRegistry
from .transports import BaseTransport, get_transport
from .utils.retry import classify_error, schedule_retry
from .workspaces import DirectoryWorkspaceManager, WorkspaceManager, workspace_name

logger = logging.getLogger(__name__)

ErrorClassifier = Callable[[BaseException], str]

_UNSET: Any = object()


@dataclass
class StepOutcome:
    step: StepSpec
    step_number: int
    outputs: Optional[Dict[str, Any]] = None
    escalation: Optional[EscalationRequired] = None
    error: Optional[BaseException] = None
    classification: str = "permanent"
    retry_count: int = 0
    decisions: List[Decision] = field(default_factory=list)


class WorkflowEngine:
    """Drive workflow runs through their state machine.

    Runs return control to the caller when they complete, fail, pause or park
    on an escalation. Parked runs continue through :meth:`resume`, either
    directly or from a resume signal handled by :meth:`process_signals`.
    """

    def __init__(
        self,
        executors: Optional[ExecutorRegistry] = None,
        *,
        repository: Optional[WorkflowRepository] = None,
        escalations: Optional[EscalationCoordinator] = None,
        decision_engine: Optional[DecisionEngine] = None,
        transport: Optional[BaseTransport] = None,
        workspace_manager: Optional[WorkspaceManager] = None,
        notifier: Optional[NotificationSink] = None,
        status_writer: Optional[StatusFileWriter] = None,
        config: Optional[WaypointConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.executors = executors or ExecutorRegistry()
        self.repository = repository or get_repository(config=self.config)
        self.notifier = notifier if notifier is not None else LoggingNotificationSink()
        self.transport = transport or get_transport(config=self.config)
        self.escalations = escalations or EscalationCoordinator(
            get_escalation_store(config=self.config),
            transport=self.transport,
            notifier=self.notifier,
        )
        if decision_engine is None:
            knowledge = (
                KnowledgeBase.from_directory(
                    self.config.knowledge_dir,
                    threshold=self.config.decision.knowledge_match_threshold,
                )
                if self.config.knowledge_dir
                else None
            )
            decision_engine = DecisionEngine(knowledge=knowledge, config=self.config.decision)
        self.decision_engine = decision_engine
        self.workspaces = workspace_manager or DirectoryWorkspaceManager(
            self.config.workspace_root
        )
        if status_writer is None and self.config.status_dir:
            status_writer = StatusFileWriter(self.config.status_dir)
        self.status_writer = status_writer
        self.hooks = HookDispatcher()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._pause_requested: Set[str] = set()
        self._cancel_requested: Set[str] = set()
        self._classifiers: Dict[str, ErrorClassifier] = {}

    # ------------------------------------------------------------------
    # registration

    def register_pre_step_hook(self, hook: StepHook) -> StepHook:
        return self.hooks.register("pre_step", hook)

    def register_post_step_hook(self, hook: StepHook) -> StepHook:
        return self.hooks.register("post_step", hook)

    def default_options(self, **overrides: Any) -> ExecutionOptions:
        engine = self.config.engine
        values = {
            "max_escalations": engine.max_escalations,
            "timeout": engine.timeout,
            "retry": engine.retry,
            "auto_accept_review": engine.auto_accept_review,
            "parallel_batches": engine.parallel_batches,
        }
        values.update(overrides)
        return ExecutionOptions(**values)

    # ------------------------------------------------------------------
    # control operations

    def _busy(self, run_id: str) -> bool:
        lock = self._locks.get(run_id)
        return run_id in self._active or (lock is not None and lock.locked())

    @asynccontextmanager
    async def _control(self, run_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(run_id, asyncio.Lock())
        if self._busy(run_id):
            raise InvalidStateTransitionError(
                f"Run {run_id} is busy with another operation",
                context={"run_id": run_id},
            )
        async with lock:
            yield

    async def start(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any], str, Path],
        *,
        run_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
        error_classifier: Optional[ErrorClassifier] = None,
    ) -> WorkflowResult:
        """Validate ``definition`` and run it until it completes, fails or parks."""
        if not isinstance(definition, WorkflowDefinition):
            definition = load_definition(definition)
        plan = build_execution_plan(definition)
        for step in definition.steps:
            self.executors.resolve(step.action)

        options = options or self.default_options()
        run_id = run_id or str(uuid.uuid4())

        async with self._control(run_id):
            if await self.repository.get_run(run_id) is not None:
                raise InvalidStateTransitionError(
                    f"Run {run_id} already exists", context={"run_id": run_id}
                )
            if error_classifier is not None:
                self._classifiers[run_id] = error_classifier

            state = WorkflowRunState(
                run_id=run_id,
                workflow_name=definition.name,
                total_steps=plan.total_steps,
                variables=dict(variables or {}),
            )
            state.workspace = await self.workspaces.create(
                workspace_name(definition.name, run_id)
            )
            record = RunRecord(state=state, definition=definition, options=options)
            logger.info(
                f"Starting run {run_id} of workflow {definition.name} "
                f"({plan.total_steps} steps)"
            )
            await self._transition(record, RunStatus.IN_PROGRESS)
            await self._save(record)
            return await self._run(record, plan)

    execute = start

    async def resume(self, run_id: str, response: Any = _UNSET) -> WorkflowResult:
        """Continue a parked or paused run from its latest checkpoint.

        When ``response`` is given, the pending escalation is resolved with it
        first.
        """
        async with self._control(run_id):
            record = await self._load_latest(run_id)
            state = record.state

            if state.status == RunStatus.AWAITING_ESCALATION:
                escalation = await self._resolved_escalation(state, response)
                state.record_human_answer(
                    escalation.step_id, escalation.question, escalation.response
                )
                state.pending_escalation_id = None
                state.paused = False
                logger.info(
                    f"Resuming run {run_id} at step {escalation.step_id} "
                    f"with human decision from {escalation.id}"
                )
                await self._transition(record, RunStatus.IN_PROGRESS)
            elif state.status == RunStatus.IN_PROGRESS and state.paused:
                if response is not _UNSET:
                    raise InvalidStateTransitionError(
                        f"Run {run_id} has no pending escalation to respond to",
                        context={"run_id": run_id},
                    )
                state.paused = False
                state.touch()
                logger.info(f"Resuming paused run {run_id}")
                await emit(self.notifier, self._event("resumed", record))
            else:
                raise InvalidStateTransitionError(
                    f"Run {run_id} cannot be resumed from {state.status.value}",
                    context={"run_id": run_id, "status": state.status.value},
                )

            await self._save(record)
            return await self._run(record, build_execution_plan(record.definition))

    async def recover(self, run_id: str) -> WorkflowResult:
        """Continue an in-progress run whose process stopped mid-flight."""
        async with self._control(run_id):
            record = await self._load_latest(run_id)
            if record.state.status != RunStatus.IN_PROGRESS or record.state.paused:
                raise InvalidStateTransitionError(
                    f"Run {run_id} is not recoverable from {record.state.status.value}",
                    context={"run_id": run_id, "paused": record.state.paused},
                )
            logger.info(
                f"Recovering run {run_id} from step {record.state.current_step_id}"
            )
            await self._save(record)
            return await self._run(record, build_execution_plan(record.definition))

    async def pause(self, run_id: str) -> WorkflowResult:
        """Stop the run at the next step boundary."""
        if run_id in self._active:
            self._pause_requested.add(run_id)
            logger.info(f"Pause requested for run {run_id}")
            return await self.result(run_id)

        async with self._control(run_id):
            record = await self._load_latest(run_id)
            if record.state.status != RunStatus.IN_PROGRESS:
                raise InvalidStateTransitionError(
                    f"Run {run_id} cannot be paused from {record.state.status.value}",
                    context={"run_id": run_id},
                )
            await self._park_paused(record)
            return self._to_result(record)

    async def cancel(self, run_id: str, reason: str = "Cancelled by user") -> WorkflowResult:
        """Fail the run, cancel its open escalation and destroy its workspace."""
        if run_id in self._active:
            self._cancel_requested.add(run_id)
            task = self._tasks.get(run_id)
            done = self._done.get(run_id)
            if task is not None:
                task.cancel()
            if done is not None:
                await done.wait()
            return await self.result(run_id)

        async with self._control(run_id):
            record = await self._load_record(run_id)
            if record.state.is_terminal:
                raise InvalidStateTransitionError(
                    f"Run {run_id} is already {record.state.status.value}",
                    context={"run_id": run_id},
                )
            await self._fail(
                record,
                ErrorSummary(
                    step_id=record.state.current_step_id,
                    error_type="Cancelled",
                    classification="cancelled",
                    message=reason,
                ),
            )
            return self._to_result(record)

    async def accept_review(self, run_id: str) -> WorkflowResult:
        """Complete a run held in review."""
        async with self._control(run_id):
            record = await self._load_record(run_id)
            await self._transition(record, RunStatus.COMPLETE)
            await self._save(record)
            logger.info(f"Review accepted for run {run_id}")
            return self._to_result(record)

    async def fail_stale_escalations(self, older_than: timedelta) -> List[str]:
        """Fail runs whose escalation has been pending longer than ``older_than``."""
        cutoff = utcnow() - older_than
        failed: List[str] = []
        for escalation in await self.escalations.list(status=EscalationStatus.PENDING):
            if escalation.created_at >= cutoff:
                continue
            run_id = escalation.workflow_run_id
            if self._busy(run_id):
                logger.info(f"Skipping stale escalation {escalation.id}: run {run_id} is busy")
                continue
            async with self._control(run_id):
                record = await self.repository.get_run(run_id)
                if (
                    record is None
                    or record.state.status != RunStatus.AWAITING_ESCALATION
                    or record.state.pending_escalation_id != escalation.id
                ):
                    continue
                await self._fail(
                    record,
                    ErrorSummary(
                        step_id=escalation.step_id,
                        error_type="EscalationTimeout",
                        classification="timeout",
                        message=f"Escalation {escalation.id} unanswered since "
                        f"{escalation.created_at.isoformat()}",
                    ),
                )
            failed.append(run_id)
        if failed:
            logger.warning(f"Failed {len(failed)} runs with stale escalations")
        return failed

    # ------------------------------------------------------------------
    # queries

    async def status(self, run_id: str) -> WorkflowRunState:
        return (await self._load_record(run_id)).state

    async def result(self, run_id: str) -> WorkflowResult:
        return self._to_result(await self._load_record(run_id))

    async def list_runs(self, status: Optional[RunStatus] = None) -> List[WorkflowRunState]:
        return [r.state for r in await self.repository.list_runs(status)]

    async def list_escalations(
        self,
        status: Optional[EscalationStatus] = None,
        workflow_run_id: Optional[str] = None,
    ) -> List[Escalation]:
        return await self.escalations.list(status=status, workflow_run_id=workflow_run_id)

    # ------------------------------------------------------------------
    # signals

    async def respond_to_escalation(
        self, escalation_id: str, response: Any
    ) -> Optional[WorkflowResult]:
        """Resolve an escalation and resume its run from the resume signal."""
        escalation = await self.escalations.respond(escalation_id, response)
        results = await self.process_signals()
        for result in results:
            if result.run_id == escalation.workflow_run_id:
                return result
        return None

    async def handle_signal(self, message: SignalMessage) -> Optional[WorkflowResult]:
        record = await self.repository.get_run(message.run_id)
        if (
            record is None
            or record.state.status != RunStatus.AWAITING_ESCALATION
            or record.state.pending_escalation_id != message.escalation_id
        ):
            logger.debug(
                f"Ignoring resume signal {message.message_id} for run {message.run_id}"
            )
            return None
        try:
            return await self.resume(message.run_id)
        except InvalidStateTransitionError as e:
            logger.info(f"Resume signal for run {message.run_id} not applied: {e}")
            return None

    async def process_signals(self, topic: str = RESUME_TOPIC) -> List[WorkflowResult]:
        """Drain pending resume signals and resume the runs they name."""
        results: List[WorkflowResult] = []
        while True:
            item = await self.transport.poll(topic)
            if item is None:
                break
            raw, message = item
            result = await self.handle_signal(message)
            await self.transport.ack(raw)
            if result is not None:
                results.append(result)
        return results

    async def listen(self, lifespan: Optional[float] = None, topic: str = RESUME_TOPIC) -> None:
        """Resume runs as signals arrive until ``lifespan`` seconds pass."""
        async for raw, message in self.transport.subscribe(topic, lifespan=lifespan):
            await self.handle_signal(message)
            await self.transport.ack(raw)

    # ------------------------------------------------------------------
    # execution

    async def _run(self, record: RunRecord, plan: ExecutionPlan) -> WorkflowResult:
        run_id = record.run_id
        self._active.add(run_id)
        self._done[run_id] = asyncio.Event()
        task = asyncio.ensure_future(self._execute_steps(record, plan))
        self._tasks[run_id] = task
        try:
            await asyncio.wait_for(task, timeout=record.options.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Run {run_id} exceeded timeout of {record.options.timeout}s")
            await self._fail(
                record,
                ErrorSummary(
                    step_id=record.state.current_step_id,
                    error_type="RunTimeout",
                    classification="timeout",
                    message=f"Run exceeded {record.options.timeout}s",
                ),
            )
        except asyncio.CancelledError:
            if run_id not in self._cancel_requested:
                raise
            logger.info(f"Run {run_id} cancelled during step {record.state.current_step_id}")
            await self._fail(
                record,
                ErrorSummary(
                    step_id=record.state.current_step_id,
                    error_type="Cancelled",
                    classification="cancelled",
                    message="Cancelled by user",
                ),
            )
        finally:
            self._active.discard(run_id)
            self._tasks.pop(run_id, None)
            self._pause_requested.discard(run_id)
            self._cancel_requested.discard(run_id)
            self._done.pop(run_id).set()
        return self._to_result(record)

    async def _execute_steps(self, record: RunRecord, plan: ExecutionPlan) -> None:
        numbers = {step_id: i + 1 for i, step_id in enumerate(plan.order)}
        definition = record.definition

        for batch in plan.batches:
            pending = [
                definition.get_step(sid)
                for sid in batch
                if sid not in record.state.completed_step_ids
            ]
            if not pending:
                continue

            if record.options.parallel_batches and len(pending) > 1:
                if await self._at_boundary(record):
                    return
                for step in pending:
                    await self._before_step(record, step, numbers[step.id])
                outcomes = await asyncio.gather(
                    *(self._invoke_step(record, step, numbers[step.id]) for step in pending)
                )
                for outcome in outcomes:
                    if not await self._apply(record, outcome):
                        return
                continue

            for step in pending:
                if await self._at_boundary(record):
                    return
                await self._before_step(record, step, numbers[step.id])
                outcome = await self._invoke_step(record, step, numbers[step.id])
                if not await self._apply(record, outcome):
                    return

        await self._finish(record)

    async def _at_boundary(self, record: RunRecord) -> bool:
        if record.run_id in self._pause_requested:
            self._pause_requested.discard(record.run_id)
            await self._park_paused(record)
            return True
        return False

    async def _before_step(self, record: RunRecord, step: StepSpec, number: int) -> None:
        state = record.state
        state.current_step_id = step.id
        state.touch()
        await self._checkpoint(record, step.id, "pre_step")
        logger.info(
            f"Run {state.run_id}: step {number}/{state.total_steps} {step.id} ({step.action})"
        )
        await self.hooks.dispatch("pre_step", self._snapshot(record, step, number))

    async def _invoke_step(
        self, record: RunRecord, step: StepSpec, number: int
    ) -> StepOutcome:
        state = record.state
        retry = record.options.retry
        classifier = self._classifiers.get(state.run_id, classify_error)
        attempt = 0

        while True:
            ctx = StepContext(state, step, self.decision_engine, attempt=attempt)
            inputs = dict(step.inputs)
            try:
                executor = self.executors.resolve(step.action)
                outputs = await executor(inputs, ctx)
            except EscalationRequired as e:
                return StepOutcome(step, number, escalation=e, decisions=ctx.decisions)
            except Exception as e:
                classification = classifier(e)
                logger.error(
                    f"Step {step.id} of run {state.run_id} failed "
                    f"(attempt {attempt + 1}, {classification}): {e!r}; inputs={inputs}"
                )
                if classification == "transient" and attempt < retry.max_retries:
                    delay = await schedule_retry(attempt, retry)
                    logger.info(f"Retrying step {step.id} after {delay:.2f}s")
                    attempt += 1
                    continue
                return StepOutcome(
                    step,
                    number,
                    error=e,
                    classification=classification,
                    retry_count=attempt,
                    decisions=ctx.decisions,
                )

            if outputs is None:
                outputs = {}
            elif not isinstance(outputs, dict):
                outputs = {"result": outputs}
            missing = [key for key in step.outputs if key not in outputs]
            if missing:
                error = PermanentStepError(
                    f"Step {step.id} did not produce declared outputs: {', '.join(missing)}",
                    step_id=step.id,
                    context={"missing": missing},
                )
                logger.error(f"Step {step.id} of run {state.run_id} failed: {error.message}")
                return StepOutcome(
                    step,
                    number,
                    error=error,
                    retry_count=attempt,
                    decisions=ctx.decisions,
                )
            return StepOutcome(step, number, outputs=outputs, decisions=ctx.decisions)

    async def _apply(self, record: RunRecord, outcome: StepOutcome) -> bool:
        """Fold a step outcome into the run; ``False`` stops the run loop."""
        if outcome.escalation is not None:
            await self._park_for_escalation(record, outcome)
            return False
        if outcome.error is not None:
            await self._fail(
                record,
                ErrorSummary(
                    step_id=outcome.step.id,
                    error_type=type(outcome.error).__name__,
                    classification=outcome.classification,
                    message=str(outcome.error),
                    retry_count=outcome.retry_count,
                ),
            )
            return False

        state = record.state
        step = outcome.step
        await self.hooks.dispatch(
            "post_step",
            self._snapshot(record, step, outcome.step_number, outputs=outcome.outputs),
        )
        state.mark_step_complete(step.id, outcome.outputs or {})
        await self._checkpoint(record, step.id, "post_step")
        await self.repository.prune_checkpoints(
            state.run_id, self.config.engine.checkpoint_retention
        )
        await self._save(record)
        await emit(
            self.notifier,
            self._event(
                "step_completed",
                record,
                step_id=step.id,
                data={
                    "progress_percentage": state.progress_percentage,
                    "decision_sources": [d.source.value for d in outcome.decisions],
                },
            ),
        )
        return True

    async def _park_for_escalation(self, record: RunRecord, outcome: StepOutcome) -> None:
        state = record.state
        signal = outcome.escalation
        escalation_id = await self.escalations.add(
            workflow_run_id=state.run_id,
            step_id=outcome.step.id,
            question=signal.question,
            decision=signal.decision,
            workflow_name=state.workflow_name,
            context={"step_inputs": dict(outcome.step.inputs)},
        )
        state.pending_escalation_id = escalation_id
        state.current_step_id = outcome.step.id
        state.escalation_count += 1
        await self._transition(record, RunStatus.AWAITING_ESCALATION)
        await self._checkpoint(record, outcome.step.id, "escalation")
        await self._save(record)
        if state.escalation_count > record.options.max_escalations:
            logger.warning(
                f"Run {state.run_id} exceeded escalation budget "
                f"({state.escalation_count} > {record.options.max_escalations})"
            )
        logger.info(
            f"Run {state.run_id} awaiting escalation {escalation_id} at step {outcome.step.id}"
        )

    async def _park_paused(self, record: RunRecord) -> None:
        record.state.paused = True
        record.state.touch()
        await self._checkpoint(record, record.state.current_step_id, "paused")
        await self._save(record)
        await emit(self.notifier, self._event("paused", record))
        logger.info(f"Run {record.run_id} paused")

    async def _finish(self, record: RunRecord) -> None:
        state = record.state
        state.current_step_id = None
        await self._transition(record, RunStatus.REVIEW)
        if record.options.auto_accept_review:
            await self._transition(record, RunStatus.COMPLETE)
        await self._checkpoint(record, None, state.status.value)
        await self._save(record)
        logger.info(f"Run {state.run_id} finished with status {state.status.value}")

    async def _fail(self, record: RunRecord, summary: ErrorSummary) -> None:
        """Roll back to the latest checkpoint and mark the run failed."""
        latest = await self.repository.latest_checkpoint(record.run_id)
        if latest is not None:
            restored = latest.restore()
            restored.workspace = record.state.workspace
            record.state = restored

        state = record.state
        if state.pending_escalation_id:
            try:
                await self.escalations.cancel(state.pending_escalation_id)
            except (EscalationNotFoundError, EscalationStateError) as e:
                logger.info(f"Escalation {state.pending_escalation_id} left as is: {e}")
            state.pending_escalation_id = None

        state.error = summary
        await self._transition(record, RunStatus.FAILED)
        await self._save(record)
        logger.error(
            f"Run {state.run_id} failed at step {summary.step_id} "
            f"({summary.classification}, {summary.retry_count} retries): {summary.message}"
        )
        if state.workspace is not None:
            await self.workspaces.destroy(state.workspace)

    # ------------------------------------------------------------------
    # helpers

    async def _resolved_escalation(self, state: WorkflowRunState, response: Any) -> Escalation:
        escalation_id = state.pending_escalation_id
        if escalation_id is None:
            raise InvalidStateTransitionError(
                f"Run {state.run_id} has no pending escalation",
                context={"run_id": state.run_id},
            )
        if response is not _UNSET:
            return await self.escalations.respond(escalation_id, response)

        escalation = await self.escalations.get_by_id(escalation_id)
        if escalation is None:
            raise EscalationNotFoundError(
                f"Escalation not found: {escalation_id}",
                context={"escalation_id": escalation_id},
            )
        if escalation.status != EscalationStatus.RESOLVED:
            raise InvalidStateTransitionError(
                f"Escalation {escalation_id} is {escalation.status.value}; "
                "respond before resuming",
                context={"run_id": state.run_id, "escalation_id": escalation_id},
            )
        return escalation

    async def _load_record(self, run_id: str) -> RunRecord:
        record = await self.repository.get_run(run_id)
        if record is None:
            raise RunNotFoundError(f"Run not found: {run_id}", context={"run_id": run_id})
        return record

    async def _load_latest(self, run_id: str) -> RunRecord:
        """Run record with its state replaced by the highest checkpoint."""
        record = await self._load_record(run_id)
        if record.state.is_terminal:
            return record
        checkpoint = await self.repository.latest_checkpoint(run_id)
        if checkpoint is not None:
            record.state = checkpoint.restore()
        return record

    async def _transition(self, record: RunRecord, new_status: RunStatus) -> None:
        old_status = record.state.transition(new_status)
        await emit(
            self.notifier,
            self._event("state_changed", record, old_status=old_status, new_status=new_status),
        )

    async def _checkpoint(self, record: RunRecord, step_id: Optional[str], reason: str) -> None:
        checkpoint = await self.repository.save_checkpoint(record.state, step_id, reason)
        logger.debug(
            f"Checkpoint {checkpoint.sequence} for run {record.run_id} ({reason} {step_id})"
        )

    async def _save(self, record: RunRecord) -> None:
        await self.repository.save_run(record)
        if self.status_writer is not None:
            await self.status_writer.write(record)

    def _snapshot(
        self,
        record: RunRecord,
        step: StepSpec,
        number: int,
        outputs: Optional[Dict[str, Any]] = None,
    ) -> StepSnapshot:
        state = record.state
        return StepSnapshot(
            run_id=state.run_id,
            workflow_name=state.workflow_name,
            step_id=step.id,
            step_number=number,
            total_steps=state.total_steps,
            inputs=dict(step.inputs),
            outputs=outputs,
            variables=dict(state.variables),
        )

    @staticmethod
    def _event(kind: str, record: RunRecord, **kwargs: Any) -> WorkflowEvent:
        return WorkflowEvent(
            kind=kind,
            run_id=record.run_id,
            workflow_name=record.state.workflow_name,
            **kwargs,
        )

    @staticmethod
    def _to_result(record: RunRecord) -> WorkflowResult:
        return WorkflowResult.from_state(record.state, record.options.max_escalations)
