"""Tests for coordinator workflow expansion and prompt rendering."""

from __future__ import annotations

from agent_flow.agents.context import ContextSummary, ContextType
from agent_flow.agents.prompts import build_task_prompt, role_prompt
from agent_flow.agents.workflow import (
    MINIMAL_WORKFLOW,
    WorkflowStep,
    expand_workflow,
    is_critical_dependency,
    user_request,
)
from agent_flow.task_engine.model import DelegationKind, Task, TaskCategory, TaskPriority
from agent_flow.task_engine.policy import CategoryPolicy


def _parent() -> Task:
    return Task(
        id="root",
        description="Orchestrate multi-agent development for: a billing service",
        category=TaskCategory.ORCHESTRATOR,
    )


class TestExpandWorkflow:
    def test_user_request_prefix(self) -> None:
        assert user_request("Orchestrate multi-agent development for: x y") == "x y"
        assert user_request("  plain request ") == "plain request"

    def test_minimal_set_when_unconfigured(self) -> None:
        tasks = expand_workflow(_parent(), None)
        assert len(tasks) == len(MINIMAL_WORKFLOW)
        by_category = {t.category: t for t in tasks}
        assert by_category[TaskCategory.ARCHITECT].priority == TaskPriority.HIGH
        assert by_category[TaskCategory.DOCUMENTATION].priority == TaskPriority.LOW
        assert by_category[TaskCategory.ARCHITECT].description == "Design system architecture for: a billing service"
        assert all(t.delegated_by == "root" for t in tasks)
        assert all(t.delegation_kind == DelegationKind.WORKFLOW for t in tasks)

    def test_only_critical_dependencies_are_kept(self) -> None:
        steps = [
            WorkflowStep(TaskCategory.ORCHESTRATOR, "coordinate"),
            WorkflowStep(TaskCategory.ARCHITECT, "Design"),
            WorkflowStep(TaskCategory.CODER, "Build", depends_on=(TaskCategory.ARCHITECT, TaskCategory.ORCHESTRATOR)),
            WorkflowStep(TaskCategory.RESEARCH, "Survey options"),
            WorkflowStep(TaskCategory.DOCUMENTATION, "Write docs", depends_on=(TaskCategory.CODER,)),
        ]
        tasks = expand_workflow(_parent(), steps)

        assert [t.category for t in tasks] == [
            TaskCategory.RESEARCH,
            TaskCategory.DOCUMENTATION,
            TaskCategory.ARCHITECT,
            TaskCategory.CODER,
        ]
        by_category = {t.category: t for t in tasks}
        assert by_category[TaskCategory.CODER].dependencies == ["root", by_category[TaskCategory.ARCHITECT].id]
        assert by_category[TaskCategory.DOCUMENTATION].dependencies == ["root"]

    def test_policy_decides_which_steps_go_first(self) -> None:
        steps = [
            WorkflowStep(TaskCategory.ARCHITECT, "Design"),
            WorkflowStep(TaskCategory.DOCUMENTATION, "Write docs"),
            WorkflowStep(TaskCategory.DEVOPS, "Ship it"),
        ]
        policy = CategoryPolicy.build(independent=["devops"])
        tasks = expand_workflow(_parent(), steps, policy)
        assert [t.category for t in tasks] == [
            TaskCategory.DEVOPS,
            TaskCategory.ARCHITECT,
            TaskCategory.DOCUMENTATION,
        ]

    def test_empty_configured_workflow_creates_nothing(self) -> None:
        assert expand_workflow(_parent(), []) == []

    def test_critical_dependency_table(self) -> None:
        assert is_critical_dependency(TaskCategory.TESTER, TaskCategory.CODER)
        assert not is_critical_dependency(TaskCategory.CODER, TaskCategory.TESTER)


class TestPrompt:
    def test_sections_and_context(self) -> None:
        task = Task(id="t1", description="Add rate limiting", category=TaskCategory.CODER)
        context = [
            ContextSummary(id="c1", producer_id="t0", type=ContextType.RESULT, summary="Token bucket chosen", timestamp="x"),
            ContextSummary(id="c2", producer_id="t9", type=ContextType.ERROR, summary="Redis down", timestamp="x"),
        ]
        prompt = build_task_prompt(task, context)

        assert prompt.startswith(role_prompt(TaskCategory.CODER))
        assert "## Task Description\nAdd rate limiting\n" in prompt
        assert "- result: Token bucket chosen\n- error: Redis down" in prompt
        assert "## Delegation Context" not in prompt
        assert "DELEGATE_TO: <agent_mode> - <specific task description>" in prompt
        valid = prompt.split("Valid agent modes: ", 1)[1]
        assert "tester" in valid
        assert "orchestrator" not in valid

    def test_delegated_task_mentions_parent(self) -> None:
        task = Task(
            description="Review auth",
            category=TaskCategory.SECURITY,
            delegated_by="task-parent",
            delegation_kind=DelegationKind.REVIEW,
        )
        prompt = build_task_prompt(task)
        assert "## Delegation Context" in prompt
        assert "task-parent" in prompt
        assert "Delegation Type: review" in prompt
        assert "- (none yet)" in prompt

    def test_role_overrides_and_default_role(self) -> None:
        assert role_prompt(TaskCategory.CODER, {"coder": "You write Go."}) == "You write Go."
        assert "software engineering assistant" in role_prompt(TaskCategory.MOBILE)
