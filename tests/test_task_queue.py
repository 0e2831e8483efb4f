"""Tests for the task model and the dependency-aware queue."""

from __future__ import annotations

import pytest

from agent_flow.errors import DependencyDeadlock, ValidationError
from agent_flow.task_engine.model import (
    DelegationKind,
    Task,
    TaskCategory,
    TaskPriority,
    TaskStatus,
)
from agent_flow.task_engine.queue import TaskQueue


def _task(task_id: str, category: str = "coder", priority: str = "medium", deps: list[str] | None = None) -> Task:
    return Task(
        id=task_id,
        description=f"work for {task_id}",
        category=category,  # type: ignore[arg-type]
        priority=priority,  # type: ignore[arg-type]
        dependencies=list(deps or []),
    )


class _FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

class TestTaskModel:
    def test_generated_id_shape(self) -> None:
        task = Task(description="x")
        assert task.id.startswith("task-")
        assert len(task.id) == len("task-") + 8

    def test_round_trip_keeps_enums(self) -> None:
        task = Task(
            description="audit",
            category=TaskCategory.SECURITY,
            priority=TaskPriority.HIGH,
            delegated_by="task-parent",
            delegation_kind=DelegationKind.REVIEW,
        )
        restored = Task.from_dict(task.to_dict())
        assert restored.category == TaskCategory.SECURITY
        assert restored.priority == TaskPriority.HIGH
        assert restored.delegation_kind == DelegationKind.REVIEW
        assert restored.to_dict()["category"] == "security"

    def test_from_dict_tolerates_unknown_values(self) -> None:
        restored = Task.from_dict({"id": "t", "category": "wizard", "status": "exploded"})
        assert restored.category == TaskCategory.CODER
        assert restored.status == TaskStatus.PENDING

    def test_transitions_are_monotonic(self) -> None:
        task = Task(description="x")
        task.transition(TaskStatus.RUNNING)
        assert task.started_at is not None
        task.transition(TaskStatus.COMPLETED)
        assert task.completed_at is not None
        with pytest.raises(ValueError, match="Invalid transition"):
            task.transition(TaskStatus.PENDING)

    def test_pending_cannot_jump_to_completed(self) -> None:
        task = Task(description="x")
        assert not task.can_transition(TaskStatus.COMPLETED)
        assert task.can_transition(TaskStatus.FAILED)

    def test_priority_sort_key(self) -> None:
        keys = sorted(TaskPriority, key=lambda p: p.sort_key)
        assert keys == [TaskPriority.HIGH, TaskPriority.MEDIUM, TaskPriority.LOW]

    def test_category_parse(self) -> None:
        assert TaskCategory.parse(" Tester ") == TaskCategory.TESTER
        assert TaskCategory.parse("wizard") is None
        assert TaskCategory.parse(None) is None
        assert len(TaskCategory) == 29


# ---------------------------------------------------------------------------
# Validation on add
# ---------------------------------------------------------------------------

class TestTaskQueueAdd:
    def setup_method(self) -> None:
        self.queue = TaskQueue()

    def test_add_and_lookup(self) -> None:
        self.queue.add(_task("t1"))
        assert self.queue.get_by_id("t1") is not None
        assert self.queue.get_by_id("missing") is None
        assert self.queue.size() == 1
        assert "t1" in self.queue

    def test_blank_description_rejected(self) -> None:
        with pytest.raises(ValidationError, match="description"):
            self.queue.add(Task(id="t1", description="   "))

    def test_unknown_category_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Unknown task category"):
            self.queue.add(_task("t1", category="wizard"))

    def test_unknown_priority_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Unknown task priority"):
            self.queue.add(_task("t1", priority="urgent"))

    def test_duplicate_id_rejected(self) -> None:
        self.queue.add(_task("t1"))
        with pytest.raises(ValidationError, match="already exists"):
            self.queue.add(_task("t1"))

    def test_self_dependency_rejected(self) -> None:
        with pytest.raises(ValidationError, match="itself"):
            self.queue.add(_task("t1", deps=["t1"]))

    def test_string_enums_are_normalized(self) -> None:
        task = self.queue.add(_task("t1", category="Coder", priority="HIGH"))
        assert task.category is TaskCategory.CODER
        assert task.priority is TaskPriority.HIGH

    def test_dependencies_deduplicated_in_order(self) -> None:
        task = self.queue.add(_task("t1", deps=["b", "a", "b"]))
        assert task.dependencies == ["b", "a"]

    def test_validation_error_carries_code(self) -> None:
        with pytest.raises(ValidationError) as excinfo:
            self.queue.add(_task("t1", category="wizard"))
        assert excinfo.value.to_dict()["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class TestNextReady:
    def setup_method(self) -> None:
        self.queue = TaskQueue()

    def test_priority_then_insertion_order(self) -> None:
        self.queue.add(_task("low", priority="low"))
        self.queue.add(_task("high-1", priority="high"))
        self.queue.add(_task("medium", priority="medium"))
        self.queue.add(_task("high-2", priority="high"))

        order = []
        while (task := self.queue.next_ready()) is not None:
            order.append(task.id)
        assert order == ["high-1", "high-2", "medium", "low"]

    def test_claimed_task_is_running(self) -> None:
        self.queue.add(_task("t1"))
        task = self.queue.next_ready()
        assert task is not None
        assert task.status == TaskStatus.RUNNING
        assert self.queue.size() == 0
        assert self.queue.next_ready() is None

    def test_dependency_must_complete_first(self) -> None:
        self.queue.add(_task("t1", category="architect"))
        self.queue.add(_task("t2", category="coder", deps=["t1"], priority="high"))

        first = self.queue.next_ready()
        assert first is not None and first.id == "t1"
        assert self.queue.next_ready(["architect"]) is None

        self.queue.mark_completed(first, "ok")
        second = self.queue.next_ready()
        assert second is not None and second.id == "t2"

    def test_failed_dependency_never_satisfies(self) -> None:
        self.queue.add(_task("t1"))
        self.queue.add(_task("t2", deps=["t1"]))
        first = self.queue.next_ready()
        assert first is not None
        self.queue.mark_failed(first, "boom")
        assert self.queue.next_ready() is None
        assert self.queue.unsatisfiable_dependencies(self.queue.get_by_id("t2")) == ["t1"]

    def test_conflicting_category_is_skipped(self) -> None:
        self.queue.add(_task("i1", category="integrator", priority="high"))
        self.queue.add(_task("d1", category="documentation", priority="low"))
        task = self.queue.next_ready(["coder"])
        assert task is not None and task.id == "d1"
        assert self.queue.next_ready(["coder"]) is None

    def test_sequential_category_waits_for_idle(self) -> None:
        self.queue.add(_task("o1", category="orchestrator"))
        assert self.queue.next_ready(["documentation"]) is None
        task = self.queue.next_ready([])
        assert task is not None and task.id == "o1"

    def test_nothing_starts_beside_sequential_category(self) -> None:
        self.queue.add(_task("d1", category="documentation"))
        assert self.queue.next_ready(["orchestrator"]) is None

    def test_peek_does_not_claim(self) -> None:
        self.queue.add(_task("t1"))
        assert [t.id for t in self.queue.peek_ready()] == ["t1"]
        assert self.queue.get_by_id("t1").status == TaskStatus.PENDING

    def test_counts(self) -> None:
        self.queue.add(_task("t1"))
        self.queue.add(_task("t2"))
        task = self.queue.next_ready()
        self.queue.mark_completed(task, "ok")
        assert self.queue.counts() == {"pending": 1, "running": 0, "completed": 1, "failed": 0}


# ---------------------------------------------------------------------------
# Unmet dependency backoff
# ---------------------------------------------------------------------------

class TestRequeueWithBackoff:
    def test_fails_exactly_at_bound(self) -> None:
        queue = TaskQueue(max_unmet_dependency_retries=50, retry_interval=0.0)
        task = queue.add(_task("t3", deps=["ghost"]))

        for _ in range(49):
            assert queue.requeue_with_backoff(task) is True
        assert task.status == TaskStatus.PENDING
        assert task.unmet_dependency_retries == 49

        assert queue.requeue_with_backoff(task) is False
        assert task.status == TaskStatus.FAILED
        assert task.error_type == "dependency_deadlock"
        assert task.unmet_dependency_retries == 50
        assert "ghost" in (task.error or "")

        deadlocks = queue.drain_deadlocks()
        assert len(deadlocks) == 1
        assert isinstance(deadlocks[0], DependencyDeadlock)
        assert deadlocks[0].missing == ["ghost"]
        assert queue.drain_deadlocks() == []

    def test_non_pending_task_is_left_alone(self) -> None:
        queue = TaskQueue(max_unmet_dependency_retries=2)
        queue.add(_task("t1"))
        task = queue.next_ready()
        assert queue.requeue_with_backoff(task) is False
        assert task.status == TaskStatus.RUNNING
        assert task.unmet_dependency_retries == 0

    def test_backoff_deadline(self) -> None:
        clock = _FakeClock()
        queue = TaskQueue(retry_interval=5.0, clock=clock)
        task = queue.add(_task("t1", deps=["ghost"]))

        assert queue.stalled_tasks() == [task]
        assert queue.next_retry_delay() == 0.0
        queue.requeue_with_backoff(task)

        assert queue.stalled_tasks() == []
        assert queue.next_retry_delay() == pytest.approx(5.0)

        clock.now += 5.0
        assert queue.stalled_tasks() == [task]

    def test_waiting_on_pending_dependency_is_not_stalled(self) -> None:
        queue = TaskQueue()
        queue.add(_task("t1"))
        blocked = queue.add(_task("t2", deps=["t1"]))
        assert queue.stalled_tasks() == []
        assert queue.next_retry_delay() is None
        assert queue.stalled_tasks(include_blocked=True) == [blocked]
        assert queue.next_retry_delay(include_blocked=True) == 0.0

    def test_failed_dependency_is_stalled(self) -> None:
        queue = TaskQueue()
        queue.add(_task("t1"))
        dependent = queue.add(_task("t2", deps=["t1"]))
        queue.mark_failed(queue.next_ready(), "boom")
        assert queue.stalled_tasks() == [dependent]


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

class TestCleanup:
    def test_removes_old_completed_tasks(self) -> None:
        queue = TaskQueue()
        old = queue.add(_task("old"))
        fresh = queue.add(_task("fresh"))
        for task in (queue.next_ready(), queue.next_ready()):
            queue.mark_completed(task, "ok")
        old.created_at = "2000-01-01T00:00:00+00:00"

        assert queue.cleanup(3600) == ["old"]
        assert queue.get_by_id("old") is None
        assert queue.get_by_id("fresh") is fresh

    def test_keeps_completed_dependency_of_pending_task(self) -> None:
        queue = TaskQueue()
        parent = queue.add(_task("parent", category="architect"))
        queue.mark_completed(queue.next_ready(), "ok")
        parent.created_at = "2000-01-01T00:00:00+00:00"
        queue.add(_task("child", category="architect", deps=["parent"]))

        assert queue.cleanup(3600) == []
        assert queue.get_by_id("parent") is parent
