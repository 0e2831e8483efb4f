"""Scheduling loop that drives tasks from the queue through the executor.

The orchestrator owns every collaborator it needs (queue, context store,
delegation parser, event bus) and runs on a single asyncio event loop:

* one control coroutine picks ready tasks and starts executor calls,
* each executor call runs as its own asyncio task under a hard timeout,
* completions are handled on the loop, feed the context store and the
  delegation parser, then wake the control coroutine.

The control coroutine sleeps on an :class:`asyncio.Event`; it only uses a
timeout while a stalled task is waiting for its next dependency re-check.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

from loguru import logger

from ..constants import (
    DEFAULT_COMPLETED_TASK_MAX_AGE_SECONDS,
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
    DEFAULT_LOOP_ERROR_BACKOFF_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    ERROR_TYPE_CANCELLED,
    ERROR_TYPE_EXECUTOR_EXCEPTION,
    ERROR_TYPE_EXECUTOR_FAILED,
    ERROR_TYPE_EXECUTOR_TIMEOUT,
)
from ..errors import ExecutorError, OrchestratorStateError, ValidationError
from ..task_engine.model import Task, TaskCategory, TaskPriority, TaskStatus
from ..task_engine.queue import TaskQueue
from ..utils import _now_iso, _short_id
from .context import ContextStore, ContextType
from .delegation import DelegationParser, DelegationRequest, FollowUpRuleSet
from .events import EventBus
from .executor import ExecutionOutcome, Executor
from .prompts import build_task_prompt
from .workflow import WorkflowStep, expand_workflow

if TYPE_CHECKING:
    from ..config import AgentFlowConfig

_CLEANUP_INTERVAL_SECONDS = 60.0


class _ExecutorRaisedTimeout(Exception):
    """Carries a TimeoutError raised inside the executor call."""


class OrchestratorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    DRAINING = "draining"


class WorkerStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkerRecord:
    """Bookkeeping for one in-flight executor call."""

    id: str
    task_id: str
    category: TaskCategory
    status: WorkerStatus = WorkerStatus.RUNNING
    started_at: str = ""
    ended_at: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_seconds: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "category": self.category.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "error_type": self.error_type,
            "duration_seconds": self.duration_seconds,
        }


class Orchestrator:
    """Dispatch ready tasks to an executor under a concurrency ceiling.

    Parameters
    ----------
    executor:
        Object implementing ``async execute(prompt, category)``.
    queue:
        Task queue; a default one (default category policy) is created if omitted.
    context:
        Context store; an in-memory store is created if omitted.
    parser:
        Delegation parser applied to every successful output.
    max_concurrency:
        Maximum number of executor calls in flight.
    executor_timeout_seconds:
        Hard timeout for a single executor call.
    loop_error_backoff_seconds:
        Pause after an unexpected error in the loop body.
    workflow_steps:
        Steps created when an ``orchestrator`` task completes; ``None`` uses
        the minimal built-in set.
    workflow_enabled:
        Disable coordinator workflow expansion entirely.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        queue: Optional[TaskQueue] = None,
        context: Optional[ContextStore] = None,
        parser: Optional[DelegationParser] = None,
        events: Optional[EventBus] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        executor_timeout_seconds: float = DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
        loop_error_backoff_seconds: float = DEFAULT_LOOP_ERROR_BACKOFF_SECONDS,
        completed_task_max_age_seconds: float = DEFAULT_COMPLETED_TASK_MAX_AGE_SECONDS,
        context_limit: int = DEFAULT_CONTEXT_LIMIT,
        workflow_steps: Optional[Sequence[WorkflowStep]] = None,
        workflow_enabled: bool = True,
        role_prompts: Optional[dict[str, str]] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.executor = executor
        self.queue = queue if queue is not None else TaskQueue()
        self.context = context if context is not None else ContextStore()
        self.parser = parser if parser is not None else DelegationParser()
        self.events = events if events is not None else EventBus()
        self.max_concurrency = int(max_concurrency)
        self.executor_timeout_seconds = float(executor_timeout_seconds)
        self.loop_error_backoff_seconds = float(loop_error_backoff_seconds)
        self.completed_task_max_age_seconds = float(completed_task_max_age_seconds)
        self.context_limit = int(context_limit)
        self.workflow_steps = list(workflow_steps) if workflow_steps is not None else None
        self.workflow_enabled = workflow_enabled
        self.role_prompts = dict(role_prompts or {})

        self._state = OrchestratorState.STOPPED
        self._active: dict[str, WorkerRecord] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._exit_when_idle = False
        self._last_cleanup = time.monotonic()

    @classmethod
    def from_config(
        cls,
        config: "AgentFlowConfig",
        executor: Executor,
        *,
        context_path: Optional[Path] = None,
    ) -> "Orchestrator":
        orch_cfg = config.orchestrator
        ctx_cfg = config.context
        queue = TaskQueue(
            config.categories.policy(),
            max_unmet_dependency_retries=orch_cfg.max_unmet_dependency_retries,
            retry_interval=orch_cfg.dependency_retry_interval_seconds,
        )
        context = ContextStore(
            context_path if ctx_cfg.enabled else None,
            max_entries=ctx_cfg.max_entries,
            max_age_seconds=ctx_cfg.max_age_seconds,
            flush_delay_seconds=ctx_cfg.flush_delay_seconds,
            summary_chars=ctx_cfg.summary_chars,
        )
        return cls(
            executor,
            queue=queue,
            context=context,
            parser=DelegationParser(FollowUpRuleSet.default(), follow_ups=orch_cfg.follow_up_rules),
            max_concurrency=orch_cfg.max_concurrency,
            executor_timeout_seconds=config.executor.timeout_seconds,
            loop_error_backoff_seconds=orch_cfg.loop_error_backoff_seconds,
            completed_task_max_age_seconds=orch_cfg.completed_task_max_age_seconds,
            context_limit=ctx_cfg.prompt_limit,
            workflow_steps=config.workflow.steps(),
            workflow_enabled=config.workflow.enabled,
            role_prompts=config.categories.role_prompts,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state != OrchestratorState.STOPPED

    async def start(self, *, exit_when_idle: bool = False) -> None:
        """Start the scheduling loop on the running event loop.

        With ``exit_when_idle`` the loop ends on its own once nothing is
        pending or in flight; otherwise it waits for new tasks until
        :meth:`stop`.
        """
        if self._state != OrchestratorState.STOPPED:
            raise OrchestratorStateError(f"Cannot start orchestrator in state '{self._state.value}'")
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._exit_when_idle = exit_when_idle
        self.context.load()
        self._state = OrchestratorState.RUNNING
        logger.info(
            "Orchestrator started max_concurrency={} timeout={}s pending={}",
            self.max_concurrency, self.executor_timeout_seconds, self.queue.size(),
        )
        self.events.emit("started", None)
        self._loop_task = asyncio.create_task(self._run_loop(), name="agent-flow-scheduler")

    async def stop(self) -> None:
        """Stop dispatching, wait for in-flight work, flush context."""
        if self._state == OrchestratorState.STOPPED:
            logger.debug("stop() called on a stopped orchestrator")
            return
        if self._state == OrchestratorState.RUNNING:
            self._state = OrchestratorState.DRAINING
            logger.info("Orchestrator draining active={}", len(self._inflight))
        self._wake()

        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        inflight = list(self._inflight.values())
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        await self._finish_stop()

    async def abort(self) -> None:
        """Cancel in-flight executor calls and stop.

        Cancelled executions are abandoned without rollback; their tasks are
        marked failed with error type ``cancelled``.
        """
        if self._state == OrchestratorState.STOPPED:
            return
        self._state = OrchestratorState.DRAINING
        logger.warning("Orchestrator aborting active={}", len(self._inflight))
        self._wake()

        inflight = list(self._inflight.values())
        for aio_task in inflight:
            aio_task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

        # Cancelled before the coroutine ever ran: no handler saw the cancellation.
        for task_id, record in list(self._active.items()):
            task = self.queue.get_by_id(task_id)
            if task is not None and task.status == TaskStatus.RUNNING:
                self._record_failure(task, record, "Execution cancelled by abort", ERROR_TYPE_CANCELLED)
            self._release(task_id)

        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        await self._finish_stop()

    async def run_until_complete(self) -> dict[str, Any]:
        """Run until no task is pending or in flight, then stop.

        Returns the final :meth:`get_status` snapshot.
        """
        await self.start(exit_when_idle=True)
        assert self._loop_task is not None
        try:
            await asyncio.shield(self._loop_task)
        except asyncio.CancelledError:
            await self.abort()
            raise
        await self.stop()
        return self.get_status()

    async def _finish_stop(self) -> None:
        await asyncio.to_thread(self.context.close)
        self._state = OrchestratorState.STOPPED
        counts = self.queue.counts()
        logger.info(
            "Orchestrator stopped completed={} failed={} pending={}",
            counts["completed"], counts["failed"], counts["pending"],
        )
        self.events.emit("stopped", None)

    # ------------------------------------------------------------------
    # Task submission
    # ------------------------------------------------------------------

    def add_task(
        self,
        description: str,
        category: TaskCategory | str,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        dependencies: Iterable[str] = (),
        task_id: Optional[str] = None,
    ) -> str:
        """Validate and enqueue a task; returns its id.

        Must be called on the event loop thread (or before :meth:`start`).
        Raises :class:`~agent_flow.errors.ValidationError` for bad input.
        """
        kwargs: dict[str, Any] = {
            "description": description,
            "category": category,
            "priority": priority,
            "dependencies": list(dependencies),
        }
        if task_id is not None:
            kwargs["id"] = task_id
        task = Task(**kwargs)
        self._enqueue(task)
        return task.id

    def add_task_threadsafe(
        self,
        description: str,
        category: TaskCategory | str,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        dependencies: Iterable[str] = (),
        task_id: Optional[str] = None,
    ) -> "concurrent.futures.Future[str]":
        """Submit from another thread; the future resolves to the task id."""
        if self._loop is None or self._state == OrchestratorState.STOPPED:
            raise OrchestratorStateError("Orchestrator is not running")
        future: concurrent.futures.Future[str] = concurrent.futures.Future()
        deps = list(dependencies)

        def _add() -> None:
            try:
                future.set_result(self.add_task(description, category, priority, deps, task_id))
            except ValidationError as exc:
                future.set_exception(exc)

        self._loop.call_soon_threadsafe(_add)
        return future

    def _enqueue(self, task: Task) -> Task:
        self.queue.add(task)
        self.events.emit("task_added", task)
        self._wake()
        return task

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        counts = self.queue.counts()
        return {
            "running": self.is_running,
            "state": self._state.value,
            "active_count": len(self._active),
            "pending_count": counts["pending"],
            "completed_count": counts["completed"],
            "failed_count": counts["failed"],
        }

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.queue.get_by_id(task_id)

    def list_tasks(self) -> list[Task]:
        return self.queue.list_all()

    def active_workers(self) -> list[WorkerRecord]:
        return list(self._active.values())

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def _run_loop(self) -> None:
        while self._state == OrchestratorState.RUNNING:
            try:
                if self._tick():
                    logger.info("All tasks settled; scheduler loop exiting")
                    return
            except Exception as exc:
                logger.exception("Scheduler loop error")
                self.events.emit("error", exc)
                await asyncio.sleep(self.loop_error_backoff_seconds)
                continue
            await self._wait_for_wakeup()

    def _tick(self) -> bool:
        """One scheduling pass. Returns True when the loop should exit."""
        self._dispatch_ready()
        self._requeue_stalled()
        self._maybe_cleanup()
        idle = not self._inflight and self.queue.size() == 0
        return idle and self._exit_when_idle

    def _running_categories(self) -> list[TaskCategory]:
        return [record.category for record in self._active.values()]

    def _dispatch_ready(self) -> None:
        while len(self._inflight) < self.max_concurrency:
            task = self.queue.next_ready(self._running_categories())
            if task is None:
                return
            self._spawn(task)

    def _requeue_stalled(self) -> None:
        idle = not self._inflight
        for task in self.queue.stalled_tasks(include_blocked=idle):
            self.queue.requeue_with_backoff(task)
        for deadlock in self.queue.drain_deadlocks():
            task = self.queue.get_by_id(deadlock.task_id)
            if task is None:
                continue
            self.context.store(
                task.id,
                ContextType.ERROR,
                {"description": task.description, "error": task.error, "error_type": task.error_type},
                tags=[task.category.value, "failed"],
            )
            self.events.emit("task_failed", task)

    def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        if now - self._last_cleanup < _CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        self.queue.cleanup(self.completed_task_max_age_seconds)

    async def _wait_for_wakeup(self) -> None:
        assert self._wakeup is not None
        delay = self.queue.next_retry_delay(include_blocked=not self._inflight)
        try:
            if delay is None:
                await self._wakeup.wait()
            else:
                await asyncio.wait_for(self._wakeup.wait(), timeout=max(delay, 0.001))
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _spawn(self, task: Task) -> None:
        record = WorkerRecord(
            id=_short_id("worker"),
            task_id=task.id,
            category=task.category,
            started_at=_now_iso(),
        )
        task.worker_id = record.id
        self._active[task.id] = record
        self._inflight[task.id] = asyncio.create_task(self._execute(task, record), name=record.id)
        logger.info(
            "Dispatched {} ({}, {}) to {} active={}/{}",
            task.id, task.category.value, task.priority.value, record.id,
            len(self._inflight), self.max_concurrency,
        )
        self.events.emit("worker_spawned", record)

    def _build_prompt(self, task: Task) -> str:
        summaries = self.context.get_context(task.category, self.context_limit)
        return build_task_prompt(task, summaries, role_overrides=self.role_prompts)

    async def _execute(self, task: Task, record: WorkerRecord) -> None:
        start = time.monotonic()
        outcome: Optional[ExecutionOutcome] = None
        error: Optional[str] = None
        error_type: Optional[str] = None
        try:
            prompt = self._build_prompt(task)
            outcome = await asyncio.wait_for(
                self._call_executor(prompt, task.category),
                timeout=self.executor_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = str(ExecutorError(
                f"Executor timed out after {self.executor_timeout_seconds:g}s",
                task_id=task.id,
                timed_out=True,
            ))
            error_type = ERROR_TYPE_EXECUTOR_TIMEOUT
        except asyncio.CancelledError:
            self._record_failure(task, record, "Execution cancelled by abort", ERROR_TYPE_CANCELLED)
            self._release(task.id)
            raise
        except _ExecutorRaisedTimeout as exc:
            cause = exc.__cause__
            error = f"{cause.__class__.__name__}: {cause}"
            logger.warning("Executor raised for {}: {}", task.id, error)
            error_type = ERROR_TYPE_EXECUTOR_EXCEPTION
        except Exception as exc:
            logger.warning("Executor raised for {}: {}: {}", task.id, exc.__class__.__name__, exc)
            error = f"{exc.__class__.__name__}: {exc}"
            error_type = ERROR_TYPE_EXECUTOR_EXCEPTION

        record.duration_seconds = time.monotonic() - start
        try:
            if outcome is not None and outcome.success:
                self._handle_success(task, record, outcome)
            else:
                if outcome is not None:
                    error = outcome.error or "Executor reported failure"
                    error_type = ERROR_TYPE_EXECUTOR_FAILED
                self._record_failure(task, record, error or "Unknown executor error", error_type)
        except Exception as exc:
            logger.exception("Completion handling failed for {}", task.id)
            self.events.emit("error", exc)
            if task.status == TaskStatus.RUNNING:
                self._record_failure(task, record, f"{exc.__class__.__name__}: {exc}", ERROR_TYPE_EXECUTOR_EXCEPTION)
        finally:
            self._release(task.id)

    async def _call_executor(self, prompt: str, category: TaskCategory) -> ExecutionOutcome:
        # A TimeoutError from the executor itself is not the scheduler's timeout.
        try:
            return await self.executor.execute(prompt, category)
        except asyncio.TimeoutError as exc:
            raise _ExecutorRaisedTimeout() from exc

    def _release(self, task_id: str) -> None:
        self._active.pop(task_id, None)
        self._inflight.pop(task_id, None)
        self._wake()

    def _handle_success(self, task: Task, record: WorkerRecord, outcome: ExecutionOutcome) -> None:
        output = outcome.output or ""
        self.context.store(
            task.id,
            ContextType.RESULT,
            {
                "description": task.description,
                "output": output,
                "files_created": list(outcome.files_created),
            },
            tags=[task.category.value, "completed"],
        )

        requests = self.parser.parse(output, task.category)
        for request in requests:
            self._delegate(task, request)
        if task.category == TaskCategory.ORCHESTRATOR and self.workflow_enabled:
            for child in expand_workflow(task, self.workflow_steps, self.queue.policy):
                self._enqueue(child)

        self.queue.mark_completed(task, output)
        record.status = WorkerStatus.COMPLETED
        record.ended_at = _now_iso()
        record.result = output
        logger.info(
            "Task {} completed in {:.2f}s delegations={}",
            task.id, record.duration_seconds or 0.0, len(requests),
        )
        self.events.emit("worker_completed", record)
        self.events.emit("task_completed", task)

    def _delegate(self, parent: Task, request: DelegationRequest) -> None:
        child = Task(
            description=f"{request.description} (Delegated by {parent.category.value})",
            category=request.target_category,
            priority=request.priority,
            dependencies=[parent.id],
            delegated_by=parent.id,
            delegation_kind=request.kind,
        )
        try:
            self._enqueue(child)
        except ValidationError as exc:
            logger.warning("Dropped delegation from {}: {}", parent.id, exc.message)
            return
        self.context.store(
            parent.id,
            ContextType.DELEGATION,
            {
                "delegated_to": request.target_category.value,
                "task_id": child.id,
                "task_description": request.description,
                "delegation_type": request.kind.value,
            },
            tags=[parent.category.value, request.target_category.value, "delegation"],
        )
        logger.info(
            "{} delegated {} task {} ({})",
            parent.id, request.target_category.value, child.id, request.kind.value,
        )

    def _record_failure(self, task: Task, record: WorkerRecord, error: str, error_type: Optional[str]) -> None:
        self.context.store(
            task.id,
            ContextType.ERROR,
            {"description": task.description, "error": error, "error_type": error_type},
            tags=[task.category.value, "failed"],
        )
        self.queue.mark_failed(task, error, error_type=error_type)
        record.status = WorkerStatus.FAILED
        record.ended_at = _now_iso()
        record.error = error
        record.error_type = error_type
        logger.warning("Task {} failed ({}): {}", task.id, error_type, error)
        self.events.emit("worker_failed", record)
        self.events.emit("task_failed", task)
