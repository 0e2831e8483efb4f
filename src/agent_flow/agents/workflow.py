"""Expand a completed coordinator task into the specialist workflow tasks.

When an ``orchestrator`` task completes, the configured workflow steps (or the
built-in minimal set) become new tasks for the user's request.  Every new task
depends on the coordinator task; between steps only the critical
category dependencies are kept so independent work can run in parallel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from loguru import logger

from ..constants import CRITICAL_WORKFLOW_DEPENDENCIES
from ..task_engine.model import DelegationKind, Task, TaskCategory, TaskPriority
from ..task_engine.policy import CategoryPolicy

COORDINATOR_PREFIX = "Orchestrate multi-agent development for: "


@dataclass(frozen=True)
class WorkflowStep:
    category: TaskCategory
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: tuple[TaskCategory, ...] = field(default_factory=tuple)


MINIMAL_WORKFLOW: tuple[WorkflowStep, ...] = (
    WorkflowStep(TaskCategory.ARCHITECT, "Design system architecture", TaskPriority.HIGH),
    WorkflowStep(TaskCategory.CODER, "Implement core functionality", TaskPriority.MEDIUM, (TaskCategory.ARCHITECT,)),
    WorkflowStep(TaskCategory.TESTER, "Create comprehensive tests", TaskPriority.MEDIUM, (TaskCategory.CODER,)),
    WorkflowStep(TaskCategory.DOCUMENTATION, "Create project documentation", TaskPriority.LOW),
)


def is_critical_dependency(category: TaskCategory, dependency: TaskCategory) -> bool:
    return dependency.value in CRITICAL_WORKFLOW_DEPENDENCIES.get(category.value, ())


def user_request(description: str) -> str:
    """Strip the coordinator prefix from a coordinator task's description."""
    if description.startswith(COORDINATOR_PREFIX):
        return description[len(COORDINATOR_PREFIX):].strip()
    return description.strip()


def _ordered(steps: Sequence[WorkflowStep], policy: CategoryPolicy) -> list[WorkflowStep]:
    # Independent steps first, then dependent ones in declared order.
    independent = [s for s in steps if policy.is_parallelizable(s.category)]
    dependent = [s for s in steps if not policy.is_parallelizable(s.category)]
    return independent + dependent


def expand_workflow(
    parent: Task,
    steps: Optional[Iterable[WorkflowStep]] = None,
    policy: Optional[CategoryPolicy] = None,
) -> list[Task]:
    """Build the workflow tasks for a completed coordinator *parent* task.

    ``steps=None`` (no workflow configured) uses :data:`MINIMAL_WORKFLOW`.
    Steps of the coordinator category itself are skipped.  Steps whose
    category *policy* marks independent are created first.
    """
    policy = policy if policy is not None else CategoryPolicy.default()
    if steps is None:
        logger.info("No workflow configured for {}, using the minimal task set", parent.id)
        chosen = list(MINIMAL_WORKFLOW)
    else:
        chosen = [s for s in steps if s.category != TaskCategory.ORCHESTRATOR]

    request = user_request(parent.description)
    created: dict[TaskCategory, str] = {}
    tasks: list[Task] = []
    for step in _ordered(chosen, policy):
        deps = [parent.id]
        for dep_category in step.depends_on:
            if dep_category == TaskCategory.ORCHESTRATOR:
                continue
            if is_critical_dependency(step.category, dep_category) and dep_category in created:
                deps.append(created[dep_category])

        task = Task(
            description=f"{step.description} for: {request}",
            category=step.category,
            priority=step.priority,
            dependencies=deps,
            delegated_by=parent.id,
            delegation_kind=DelegationKind.WORKFLOW,
        )
        created[step.category] = task.id
        tasks.append(task)

    logger.info("Workflow expansion for {} created {} task(s)", parent.id, len(tasks))
    return tasks
