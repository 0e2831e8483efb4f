"""In-memory task queue with dependency, priority and category semantics.

The queue is owned by a single scheduling coroutine; it performs no locking of
its own.  Selection order is priority (high first) then insertion order.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Collection
from datetime import timedelta
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import (
    DEFAULT_DEPENDENCY_RETRY_INTERVAL_SECONDS,
    DEFAULT_MAX_UNMET_DEPENDENCY_RETRIES,
    ERROR_TYPE_DEPENDENCY_DEADLOCK,
)
from ..errors import DependencyDeadlock, ValidationError
from ..utils import _now, _parse_iso
from .model import Task, TaskCategory, TaskPriority, TaskStatus
from .policy import CategoryPolicy


class TaskQueue:
    """Holds task records and answers "what may run next?".

    Parameters
    ----------
    policy:
        Category dispatch rules consulted by :meth:`next_ready`.
    max_unmet_dependency_retries:
        Number of :meth:`requeue_with_backoff` calls after which a task whose
        dependencies cannot be satisfied is forced to ``failed``.
    retry_interval:
        Seconds between re-checks of a stalled task.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        policy: Optional[CategoryPolicy] = None,
        *,
        max_unmet_dependency_retries: int = DEFAULT_MAX_UNMET_DEPENDENCY_RETRIES,
        retry_interval: float = DEFAULT_DEPENDENCY_RETRY_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy if policy is not None else CategoryPolicy.default()
        self.max_unmet_dependency_retries = max(1, int(max_unmet_dependency_retries))
        self.retry_interval = max(0.0, float(retry_interval))
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._seq: dict[str, int] = {}
        self._counter = itertools.count()
        self._retry_after: dict[str, float] = {}
        self._deadlocks: list[DependencyDeadlock] = []

    # -- validation ---------------------------------------------------------

    def _validate(self, task: Task) -> None:
        if not isinstance(task.description, str) or not task.description.strip():
            raise ValidationError("Task description must be non-empty", context={"task_id": task.id})
        category = TaskCategory.parse(task.category)
        if category is None:
            raise ValidationError(
                f"Unknown task category '{task.category}'",
                context={"task_id": task.id, "valid": [c.value for c in TaskCategory]},
            )
        priority = TaskPriority.parse(task.priority)
        if priority is None:
            raise ValidationError(
                f"Unknown task priority '{task.priority}'",
                context={"task_id": task.id, "valid": [p.value for p in TaskPriority]},
            )
        if not task.id or not str(task.id).strip():
            raise ValidationError("Task id must be non-empty")
        if task.id in self._tasks:
            raise ValidationError(f"Task {task.id} already exists", context={"task_id": task.id})
        if task.id in task.dependencies:
            raise ValidationError(f"Task {task.id} cannot depend on itself", context={"task_id": task.id})
        if task.status != TaskStatus.PENDING:
            raise ValidationError(
                f"New tasks must be pending, got '{task.status}'", context={"task_id": task.id}
            )
        task.category = category
        task.priority = priority

    # -- public API ---------------------------------------------------------

    def add(self, task: Task) -> Task:
        """Insert *task*; raises :class:`ValidationError` when malformed."""
        self._validate(task)
        # Keep order, drop duplicates.
        task.dependencies = list(dict.fromkeys(str(d) for d in task.dependencies if str(d).strip()))
        self._tasks[task.id] = task
        self._seq[task.id] = next(self._counter)
        logger.debug(
            "Task queued id={} category={} priority={} deps={}",
            task.id, task.category.value, task.priority.value, len(task.dependencies),
        )
        return task

    def get_by_id(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def size(self) -> int:
        """Number of pending tasks."""
        return sum(1 for t in self._tasks.values() if t.status == TaskStatus.PENDING)

    def list_all(self) -> list[Task]:
        return sorted(self._tasks.values(), key=lambda t: self._seq[t.id])

    def counts(self) -> dict[str, int]:
        out = {s.value: 0 for s in TaskStatus}
        for t in self._tasks.values():
            out[t.status.value] += 1
        return out

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    # -- dependency helpers -------------------------------------------------

    def dependencies_met(self, task: Task) -> bool:
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                return False
        return True

    def unsatisfiable_dependencies(self, task: Task) -> list[str]:
        """Dependencies that are missing from the queue or have failed."""
        out: list[str] = []
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status == TaskStatus.FAILED:
                out.append(dep_id)
        return out

    def _ordered_pending(self) -> list[Task]:
        pending = [t for t in self._tasks.values() if t.status == TaskStatus.PENDING]
        pending.sort(key=lambda t: (t.priority.sort_key, self._seq[t.id]))
        return pending

    # -- selection ----------------------------------------------------------

    def next_ready(self, running_categories: Collection[Any] = ()) -> Optional[Task]:
        """Pick and claim the best ready task, or return ``None``.

        A task is ready when it is pending, every dependency is ``completed``
        and the category policy admits it next to *running_categories*.  The
        selected task is moved to ``running`` before it is returned.
        """
        running = list(running_categories)
        for task in self._ordered_pending():
            if not self.dependencies_met(task):
                continue
            if not self.policy.can_run(task.category, running):
                continue
            task.transition(TaskStatus.RUNNING)
            self._retry_after.pop(task.id, None)
            return task
        return None

    def peek_ready(self, running_categories: Collection[Any] = ()) -> list[Task]:
        """Ready tasks in dispatch order, without claiming them."""
        running = list(running_categories)
        return [
            t for t in self._ordered_pending()
            if self.dependencies_met(t) and self.policy.can_run(t.category, running)
        ]

    # -- unmet dependency backoff -------------------------------------------

    def unmet_dependencies(self, task: Task) -> list[str]:
        return [
            dep_id for dep_id in task.dependencies
            if dep_id not in self._tasks or self._tasks[dep_id].status != TaskStatus.COMPLETED
        ]

    def _is_stalled(self, task: Task, include_blocked: bool) -> bool:
        if include_blocked:
            return not self.dependencies_met(task)
        return bool(self.unsatisfiable_dependencies(task))

    def stalled_tasks(self, now: Optional[float] = None, *, include_blocked: bool = False) -> list[Task]:
        """Pending tasks blocked on missing or failed dependencies, due for a re-check.

        With ``include_blocked`` every pending task with an unmet dependency
        counts, which the scheduler uses when nothing is in flight (a cycle
        among pending tasks can otherwise never make progress).
        """
        now = self._clock() if now is None else now
        out: list[Task] = []
        for task in self._ordered_pending():
            if not self._is_stalled(task, include_blocked):
                if not include_blocked:
                    self._retry_after.pop(task.id, None)
                continue
            if self._retry_after.get(task.id, 0.0) <= now:
                out.append(task)
        return out

    def next_retry_delay(self, now: Optional[float] = None, *, include_blocked: bool = False) -> Optional[float]:
        """Seconds until the earliest stalled task is due, ``None`` if none is stalled."""
        now = self._clock() if now is None else now
        due: list[float] = []
        for task in self._tasks.values():
            if task.status != TaskStatus.PENDING or not self._is_stalled(task, include_blocked):
                continue
            due.append(self._retry_after.get(task.id, now))
        if not due:
            return None
        return max(0.0, min(due) - now)

    def requeue_with_backoff(self, task: Task) -> bool:
        """Count one failed dependency check for *task* and push back its next check.

        Returns ``True`` while the task stays pending.  On the call that brings
        ``unmet_dependency_retries`` to the configured bound the task is forced
        to ``failed`` (error type ``dependency_deadlock``) and ``False`` is
        returned; the deadlock is kept for :meth:`drain_deadlocks`.
        """
        if task.status != TaskStatus.PENDING:
            return False

        task.unmet_dependency_retries += 1
        if task.unmet_dependency_retries >= self.max_unmet_dependency_retries:
            missing = self.unmet_dependencies(task)
            deadlock = DependencyDeadlock(task.id, missing, task.unmet_dependency_retries)
            self.mark_failed(task, str(deadlock), error_type=ERROR_TYPE_DEPENDENCY_DEADLOCK)
            self._deadlocks.append(deadlock)
            logger.warning(
                "Task {} failed: unmet dependencies {} after {} retries",
                task.id, missing, task.unmet_dependency_retries,
            )
            return False

        self._retry_after[task.id] = self._clock() + self.retry_interval
        return True

    def drain_deadlocks(self) -> list[DependencyDeadlock]:
        out, self._deadlocks = self._deadlocks, []
        return out

    # -- terminal transitions -----------------------------------------------

    def mark_completed(self, task: Task, result: Optional[str] = None) -> None:
        task.transition(TaskStatus.COMPLETED)
        task.result = result

    def mark_failed(self, task: Task, error: str, *, error_type: Optional[str] = None) -> None:
        task.transition(TaskStatus.FAILED)
        task.error = error
        task.error_type = error_type
        self._retry_after.pop(task.id, None)

    # -- housekeeping -------------------------------------------------------

    def cleanup(self, max_age_seconds: float) -> list[str]:
        """Remove completed tasks created more than *max_age_seconds* ago.

        Tasks still referenced as a dependency by a non-terminal task are kept.
        """
        cutoff = _now() - timedelta(seconds=max_age_seconds)
        referenced: set[str] = set()
        for t in self._tasks.values():
            if not t.is_terminal:
                referenced.update(t.dependencies)

        removed: list[str] = []
        for task_id, task in list(self._tasks.items()):
            if task.status != TaskStatus.COMPLETED or task_id in referenced:
                continue
            created = _parse_iso(task.created_at)
            if created is not None and created < cutoff:
                del self._tasks[task_id]
                self._seq.pop(task_id, None)
                removed.append(task_id)
        if removed:
            logger.debug("Queue cleanup removed {} completed task(s)", len(removed))
        return removed
