"""Workflow run engine: gating, fan-out, retry/backoff and error-handler routing."""

import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from models.relay import AgentStatus
from models.state import (
    SkipReason,
    StepExecution,
    StepStatus,
    WorkflowContext,
    WorkflowRun,
    WorkflowRunStatus,
)
from models.workflow import BackoffStrategy, RetryConfig, WorkflowDefinition, WorkflowStep
from services.agents import Agent, AgentContext, AgentNotFoundError, AgentRegistry
from services.id_generator import child_id, generate_id
from services.metrics import MetricsSink, emit_safely
from services.state_sync import Mutation, PersistenceError, StateSync
from services.task_store import TaskStore
from services.workflow_catalog import WorkflowCatalog, WorkflowNotFoundError, parse_duration

logger = logging.getLogger(__name__)

RUNS_SCHEMA = "runs"

# How long an abandoned attempt gets to notice its stop signal
ABANDON_GRACE_SECONDS = 1.0


class StepExecutionError(Exception):
    """Raised when a step attempt, or the step as a whole, fails."""

    def __init__(self, run_id: str, step_name: str, attempt: int, reason: str):
        self.run_id = run_id
        self.step_name = step_name
        self.attempt = attempt
        self.reason = reason
        super().__init__(f"Step {step_name} of run {run_id} failed on attempt {attempt}: {reason}")


class StepTimeoutError(StepExecutionError):
    """Raised when a single attempt runs past the step's timeout."""

    def __init__(self, run_id: str, step_name: str, attempt: int, timeout: float):
        self.timeout = timeout
        super().__init__(run_id, step_name, attempt, f"timed out after {timeout:g}s")


class RunNotFoundError(Exception):
    """Raised when run is not found."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class RunStateError(Exception):
    """Raised when an operation does not fit the run's current status."""

    def __init__(self, run_id: str, status: WorkflowRunStatus, operation: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Cannot {operation} run {run_id} in status {status.value}")


def compute_backoff(retry: RetryConfig | None, attempt: int) -> float:
    """Delay in seconds after failed attempt number ``attempt`` (1-based)."""
    if attempt < 1:
        raise ValueError("attempt must be at least 1")
    if retry is None:
        return 0.0

    base = retry.base_delay
    strategy = retry.backoff or BackoffStrategy.FIXED
    if strategy == BackoffStrategy.LINEAR:
        return base * attempt
    if strategy == BackoffStrategy.EXPONENTIAL:
        return base * 2 ** (attempt - 1)
    return base


@dataclass
class _RunHandle:
    run: WorkflowRun
    definition: WorkflowDefinition
    context: WorkflowContext | None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    halted: threading.Event = field(default_factory=threading.Event)
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def positions(self) -> dict[str, int]:
        return {step.name: i for i, step in enumerate(self.definition.steps)}


class WorkflowRunEngine:
    """Drives workflow runs to a terminal status.

    Steps run level by level in topological order. Within a level, steps are
    dispatched concurrently; a step with ``parallel: N`` fans out into N
    sub-invocations that retry independently.
    """

    def __init__(
        self,
        catalog: WorkflowCatalog,
        agents: AgentRegistry | Mapping[str, Agent],
        sync: StateSync | None = None,
        task_store: TaskStore | None = None,
        metrics: MetricsSink | None = None,
        max_workers: int | None = None,
    ):
        if catalog is None:
            raise ValueError("catalog is required")
        if agents is None:
            raise ValueError("agents is required")
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be positive")

        self._catalog = catalog
        self._agents = agents if isinstance(agents, AgentRegistry) else AgentRegistry.from_mapping(agents)
        self._sync = sync
        self._task_store = task_store
        self._metrics = metrics
        self._max_workers = max_workers
        self._runs: dict[str, _RunHandle] = {}
        self._lock = threading.Lock()

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _handle(self, run_id: str) -> _RunHandle:
        if not run_id:
            raise ValueError("run_id is required")
        with self._lock:
            handle = self._runs.get(run_id)
        if handle is None:
            raise RunNotFoundError(run_id)
        return handle

    def _run_exists(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._runs

    def _persist(self, handle: _RunHandle) -> None:
        if self._sync is None:
            return
        with handle.lock:
            record = handle.run.model_dump(mode="json")
            self._sync.apply(Mutation(RUNS_SCHEMA, handle.run.id, record))

    def _update_step(self, handle: _RunHandle, step_name: str, **changes: Any) -> None:
        with handle.lock:
            execution = handle.run.step(step_name)
            for key, value in changes.items():
                setattr(execution, key, value)
            self._persist(handle)

    def _skip(self, handle: _RunHandle, step_name: str, reason: SkipReason) -> None:
        logger.debug(f"Skipping step {step_name} of run {handle.run.id}: {reason.value}")
        self._update_step(
            handle,
            step_name,
            status=StepStatus.SKIPPED,
            skip_reason=reason,
            completed_at=self._utc_now(),
        )

    def start_run(self, workflow_name: str, input: Any = None) -> WorkflowRun:
        """Create a pending run of a registered workflow."""
        definition = self._catalog.get(workflow_name)
        self._catalog.topological_order(definition)

        run = WorkflowRun(
            id=generate_id("wf", exists=self._run_exists),
            workflow_name=definition.name,
            status=WorkflowRunStatus.PENDING,
            input=input,
            started_at=self._utc_now(),
            steps=[StepExecution(step_name=s.name, agent=s.agent) for s in definition.steps],
        )
        handle = _RunHandle(
            run=run,
            definition=definition,
            context=WorkflowContext(run_id=run.id, workflow_name=definition.name, input=input),
        )
        with self._lock:
            self._runs[run.id] = handle
        self._persist(handle)

        logger.info(f"Created run {run.id} of workflow {definition.name}")
        return self.get_run(run.id)

    def run(self, workflow_name: str, input: Any = None) -> WorkflowRun:
        """Start a run and drive it to completion."""
        return self.execute(self.start_run(workflow_name, input).id)

    def execute(self, run_id: str) -> WorkflowRun:
        """Drive a pending run to a terminal status."""
        handle = self._handle(run_id)
        with handle.lock:
            if handle.run.is_terminal:
                return self.get_run(run_id)
            if handle.run.status != WorkflowRunStatus.PENDING:
                raise RunStateError(run_id, handle.run.status, "execute")
            handle.run.status = WorkflowRunStatus.RUNNING

        try:
            self._persist(handle)
            logger.info(f"Executing run {run_id} of workflow {handle.definition.name}")
            emit_safely(self._metrics, "run_started", workflow=handle.definition.name)

            levels = self._catalog.topological_order(handle.definition)
            for level_idx, level in enumerate(levels):
                dispatch = self._gate_level(handle, level)
                if dispatch:
                    logger.info(f"Run {run_id}: executing level {level_idx} with {len(dispatch)} steps")
                    self._execute_level(handle, dispatch)
        except Exception as e:
            self._abort(handle, e)
            raise

        return self._finish(handle)

    def _gate_level(self, handle: _RunHandle, level: list[str]) -> list[WorkflowStep]:
        """Steps of the level allowed to start; the others are skipped."""
        dispatch = []
        for name in level:
            step = handle.definition.step(name)
            if handle.cancel_event.is_set():
                self._skip(handle, name, SkipReason.CANCELLED)
                continue

            with handle.lock:
                satisfied = all(handle.run.step(d).is_satisfied for d in step.dependencies)
            if not satisfied:
                self._skip(handle, name, SkipReason.DEPENDENCY_FAILED)
            elif handle.halted.is_set():
                self._skip(handle, name, SkipReason.RUN_HALTED)
            else:
                dispatch.append(step)
        return dispatch

    def _execute_level(self, handle: _RunHandle, steps: list[WorkflowStep]) -> None:
        workers = min(len(steps), self._max_workers or len(steps))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._run_step, handle, step): step for step in steps}
            for future in as_completed(futures):
                step = futures[future]
                if not future.result():
                    logger.debug(f"Run {handle.run.id}: step {step.name} did not succeed")

    def _run_step(self, handle: _RunHandle, step: WorkflowStep) -> bool:
        """Run one step with retries and handler routing. Returns True when satisfied."""
        run_id = handle.run.id
        if handle.cancel_event.is_set():
            self._skip(handle, step.name, SkipReason.CANCELLED)
            return False
        if handle.halted.is_set():
            self._skip(handle, step.name, SkipReason.RUN_HALTED)
            return False

        started = time.monotonic()
        self._update_step(handle, step.name, status=StepStatus.RUNNING, started_at=self._utc_now())
        task_id = self._open_task(handle, step)

        try:
            output = self._execute_step(handle, step)
        except StepExecutionError as e:
            if handle.cancel_event.is_set():
                self._skip(handle, step.name, SkipReason.CANCELLED)
                self._close_task(task_id, success=False, reason="run cancelled")
                return False

            logger.warning(f"Run {run_id}: step {step.name} exhausted retries: {e.reason}")
            recovered = self._recover(handle, step, e)
            self._close_task(task_id, success=recovered, reason=str(e))
            emit_safely(
                self._metrics, "step_duration", time.monotonic() - started,
                step=step.name, status="failed",
            )
            return recovered

        with handle.lock:
            handle.context.add_step_output(step.name, output, step.output)
            self._update_step(
                handle,
                step.name,
                status=StepStatus.COMPLETED,
                output=output,
                error=None,
                completed_at=self._utc_now(),
            )
        self._close_task(task_id, success=True)
        logger.info(f"Run {run_id}: step {step.name} completed")
        emit_safely(
            self._metrics, "step_duration", time.monotonic() - started,
            step=step.name, status="completed",
        )
        return True

    def _execute_step(self, handle: _RunHandle, step: WorkflowStep) -> Any:
        position = handle.positions[step.name]
        invocation_id = child_id(handle.run.id, position)
        if step.fan_out == 1:
            return self._attempt_loop(handle, step, invocation_id, 0, 1)

        with ThreadPoolExecutor(max_workers=step.fan_out) as executor:
            futures = [
                executor.submit(
                    self._attempt_loop, handle, step, child_id(invocation_id, i), i, step.fan_out
                )
                for i in range(step.fan_out)
            ]
            errors = []
            outputs = []
            for future in futures:
                try:
                    outputs.append(future.result())
                except StepExecutionError as e:
                    errors.append(e)
        if errors:
            raise errors[0]
        return outputs

    def _attempt_loop(
        self,
        handle: _RunHandle,
        step: WorkflowStep,
        invocation_id: str,
        index: int,
        total: int,
    ) -> Any:
        run_id = handle.run.id
        try:
            agent = self._agents.get(step.agent)
        except AgentNotFoundError as e:
            raise StepExecutionError(run_id, step.name, 0, str(e))

        timeout = parse_duration(step.timeout) if step.timeout else None
        max_attempts = step.max_attempts
        last_error = "no attempt made"

        for attempt in range(1, max_attempts + 1):
            if handle.cancel_event.is_set():
                raise StepExecutionError(run_id, step.name, attempt, "cancelled")

            with handle.lock:
                current = handle.run.step(step.name).attempt
                self._update_step(
                    handle, step.name, status=StepStatus.RUNNING, attempt=max(current, attempt)
                )
                outputs = handle.context.snapshot()["steps"]

            context = AgentContext(
                run_id=run_id,
                workflow_name=handle.definition.name,
                step_name=step.name,
                invocation_id=invocation_id,
                attempt=attempt,
                index=index,
                total=total,
                input=handle.run.input,
                outputs=outputs,
                deadline=time.monotonic() + timeout if timeout else None,
                cancel_event=handle.cancel_event,
            )

            try:
                return self._invoke(agent, step, step.instructions, context, timeout)
            except StepExecutionError as e:
                last_error = e.reason
            except Exception as e:
                last_error = str(e)

            logger.warning(
                f"Run {run_id}: step {step.name} [{invocation_id}] attempt {attempt}/{max_attempts} "
                f"failed: {last_error}"
            )
            self._agents.mark(step.agent, AgentStatus.FAILED)

            if attempt < max_attempts:
                self._update_step(handle, step.name, status=StepStatus.RETRYING, error=last_error)
                delay = compute_backoff(step.retry, attempt)
                if handle.cancel_event.wait(delay):
                    raise StepExecutionError(run_id, step.name, attempt, "cancelled")

        raise StepExecutionError(run_id, step.name, max_attempts, last_error)

    def _invoke(
        self,
        agent: Agent,
        step: WorkflowStep,
        instructions: str,
        context: AgentContext,
        timeout: float | None,
    ) -> Any:
        self._agents.mark(step.agent, AgentStatus.RUNNING)
        if timeout is None:
            output = agent.execute(instructions, context)
        else:
            executor = ThreadPoolExecutor(max_workers=1)
            try:
                future = executor.submit(agent.execute, instructions, context)
                output = future.result(timeout=timeout)
            except FutureTimeoutError:
                context.stop_event.set()
                wait([future], timeout=ABANDON_GRACE_SECONDS)
                raise StepTimeoutError(context.run_id, step.name, context.attempt, timeout)
            finally:
                executor.shutdown(wait=False)
        self._agents.mark(step.agent, AgentStatus.IDLE)
        return output

    def _routes_to_handler(self, definition: WorkflowDefinition, step_name: str) -> bool:
        if definition.handler_for(step_name) is None:
            return False
        return any(
            s.on_failure == step_name
            for s in definition.steps
            if s.name == step_name or step_name in s.dependencies
        )

    def _recover(self, handle: _RunHandle, step: WorkflowStep, error: StepExecutionError) -> bool:
        """Run the error handler for an exhausted step. Returns True when it resolved the failure."""
        run_id = handle.run.id
        handler = handle.definition.handler_for(step.name)
        if handler is not None and self._routes_to_handler(handle.definition, step.name):
            logger.info(f"Run {run_id}: routing failure of {step.name} to handler agent {handler.agent}")
            handler_step = WorkflowStep(
                name=step.name,
                agent=handler.agent,
                instructions=handler.instructions,
                timeout=step.timeout,
            )
            try:
                output = self._attempt_loop(
                    handle,
                    handler_step,
                    f"{child_id(run_id, handle.positions[step.name])}.handler",
                    0,
                    1,
                )
            except StepExecutionError as handler_error:
                error = StepExecutionError(
                    run_id, step.name, error.attempt, f"{error.reason}; handler failed: {handler_error.reason}"
                )
            else:
                with handle.lock:
                    handle.context.add_step_output(step.name, output, step.output)
                    self._update_step(
                        handle,
                        step.name,
                        status=StepStatus.FAILED,
                        attempt=max(error.attempt, handle.run.step(step.name).attempt),
                        output=output,
                        error=error.reason,
                        recovered_by=handler.agent,
                        completed_at=self._utc_now(),
                    )
                return True

        with handle.lock:
            self._update_step(
                handle,
                step.name,
                status=StepStatus.FAILED,
                error=error.reason,
                completed_at=self._utc_now(),
            )
            if handle.run.error is None:
                handle.run.error = str(error)
        handle.halted.set()
        return False

    def _finish(self, handle: _RunHandle) -> WorkflowRun:
        run = handle.run
        with handle.lock:
            if handle.cancel_event.is_set():
                for execution in run.steps:
                    if execution.status in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.RETRYING):
                        execution.status = StepStatus.SKIPPED
                        execution.skip_reason = SkipReason.CANCELLED
                        execution.completed_at = self._utc_now()
                run.status = WorkflowRunStatus.CANCELLED
                run.error = run.error or "cancelled"
            elif all(execution.is_satisfied for execution in run.steps):
                run.status = WorkflowRunStatus.COMPLETED
            else:
                run.status = WorkflowRunStatus.FAILED
                run.error = run.error or "one or more steps did not complete"
            run.completed_at = self._utc_now()
            handle.context = None
            self._persist(handle)

        event = {
            WorkflowRunStatus.COMPLETED: "run_completed",
            WorkflowRunStatus.FAILED: "run_failed",
            WorkflowRunStatus.CANCELLED: "run_cancelled",
        }[run.status]
        if run.status == WorkflowRunStatus.FAILED:
            logger.error(f"Run {run.id} failed: {run.error}")
        else:
            logger.info(f"Run {run.id} finished: {run.status.value}")
        emit_safely(self._metrics, event, workflow=run.workflow_name)
        return self.get_run(run.id)

    def _abort(self, handle: _RunHandle, error: Exception) -> None:
        """Fail a run whose own bookkeeping raised, so it cannot stay running."""
        run = handle.run
        handle.halted.set()
        logger.error(f"Run {run.id} aborted: {error}")
        with handle.lock:
            for execution in run.steps:
                if execution.status in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.RETRYING):
                    execution.status = StepStatus.SKIPPED
                    execution.skip_reason = SkipReason.RUN_HALTED
                    execution.completed_at = self._utc_now()
            run.status = WorkflowRunStatus.FAILED
            run.error = f"aborted: {error}"
            run.completed_at = self._utc_now()
            handle.context = None
            try:
                self._persist(handle)
            except PersistenceError as persist_error:
                logger.warning(f"Could not record abort of run {run.id}: {persist_error}")
        emit_safely(self._metrics, "run_failed", workflow=run.workflow_name)

    def cancel(self, run_id: str) -> WorkflowRun:
        """Request cancellation. In-flight agent invocations see the signal on their context."""
        handle = self._handle(run_id)
        with handle.lock:
            if handle.run.is_terminal:
                return self.get_run(run_id)
            handle.cancel_event.set()
            pending = handle.run.status == WorkflowRunStatus.PENDING
        logger.info(f"Cancellation requested for run {run_id}")

        if pending:
            return self._finish(handle)
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> WorkflowRun:
        handle = self._handle(run_id)
        with handle.lock:
            return handle.run.model_copy(deep=True)

    def get_context(self, run_id: str) -> WorkflowContext | None:
        """Live context of a run; None once the run has terminated."""
        return self._handle(run_id).context

    def list_runs(
        self,
        status: WorkflowRunStatus | None = None,
        workflow_name: str | None = None,
    ) -> list[WorkflowRun]:
        with self._lock:
            handles = list(self._runs.values())
        runs = []
        for handle in handles:
            with handle.lock:
                run = handle.run.model_copy(deep=True)
            if status is not None and run.status != status:
                continue
            if workflow_name is not None and run.workflow_name != workflow_name:
                continue
            runs.append(run)
        return sorted(runs, key=lambda r: r.started_at)

    def hydrate(self) -> int:
        """Load runs from the runs log. Runs left unfinished by a previous process are failed."""
        if self._sync is None:
            return 0

        loaded = 0
        for record in self._sync.replay(RUNS_SCHEMA):
            run = WorkflowRun.model_validate(record)
            try:
                definition = self._catalog.get(run.workflow_name)
            except WorkflowNotFoundError:
                logger.warning(f"Run {run.id} references unknown workflow {run.workflow_name}")
                continue

            handle = _RunHandle(run=run, definition=definition, context=None)
            with self._lock:
                self._runs[run.id] = handle
            if not run.is_terminal:
                run.status = WorkflowRunStatus.FAILED
                run.error = "interrupted before completion"
                run.completed_at = self._utc_now()
                self._persist(handle)
            loaded += 1

        logger.info(f"Loaded {loaded} workflow runs")
        return loaded

    def _open_task(self, handle: _RunHandle, step: WorkflowStep) -> str | None:
        if self._task_store is None:
            return None
        task = self._task_store.create(
            title=f"{handle.definition.name}: {step.name}",
            description=step.instructions,
            metadata={"run_id": handle.run.id, "step": step.name},
        )
        self._task_store.claim(task.id, step.agent)
        return task.id

    def _close_task(self, task_id: str | None, success: bool, reason: str | None = None) -> None:
        if task_id is None:
            return
        if success:
            self._task_store.complete(task_id)
        else:
            self._task_store.cancel(task_id, reason)
