"""Build the text prompt handed to the worker for each task."""

from __future__ import annotations

from typing import Iterable, Optional

from ..task_engine.model import Task, TaskCategory
from .context import ContextSummary

ROLE_PROMPTS: dict[str, str] = {
    "architect": "You are an expert system architect. Design scalable, maintainable solutions using proven design patterns.",
    "coder": "You are an expert programmer. Write clean, efficient, and well-documented code.",
    "tester": "You are a testing specialist. Create comprehensive test cases and drive the work with tests.",
    "debugger": "You are a debugging expert. Identify and fix issues systematically, considering root causes and edge cases.",
    "security": "You are a security specialist. Identify vulnerabilities and implement secure coding practices.",
    "documentation": "You are a technical writer. Create clear, comprehensive documentation for developers and users.",
    "orchestrator": "You are the coordinating lead. Break the request into work for the specialist agents.",
}
DEFAULT_ROLE_PROMPT = "You are a software engineering assistant working systematically through the task."


def role_prompt(category: TaskCategory, overrides: Optional[dict[str, str]] = None) -> str:
    if overrides and category.value in overrides:
        return overrides[category.value]
    return ROLE_PROMPTS.get(category.value, DEFAULT_ROLE_PROMPT)


def _delegatable_categories() -> str:
    return ", ".join(c.value for c in TaskCategory if c != TaskCategory.ORCHESTRATOR)


def build_task_prompt(
    task: Task,
    context: Iterable[ContextSummary] = (),
    *,
    role_overrides: Optional[dict[str, str]] = None,
) -> str:
    """Render the worker prompt for *task*.

    Parameters
    ----------
    task:
        The task being dispatched.
    context:
        Recent context summaries for the task's category, newest first.
    role_overrides:
        Optional ``category -> role line`` replacements from config.
    """
    context_lines = "\n".join(f"- {c.type.value}: {c.summary}" for c in context) or "- (none yet)"

    delegation_block = ""
    if task.delegated_by:
        kind = task.delegation_kind.value if task.delegation_kind else "delegation"
        delegation_block = f"""
## Delegation Context
This task was delegated by another agent (task {task.delegated_by}). Build on its previous work.
Delegation Type: {kind}
"""

    return f"""{role_prompt(task.category, role_overrides)}

## Task Description
{task.description}

## Context from Previous Agents
{context_lines}
{delegation_block}
## Agent Delegation Instructions
If other agents should work on specific aspects, add one line per request:
- DELEGATE_TO: <agent_mode> - <specific task description>
- REQUEST_AGENT: <agent_mode> - <request for additional work>
- NEEDS_REVIEW: <agent_mode> - <request for review or feedback>
- ITERATE_WITH: <agent_mode> - <request for iterative improvement>

Valid agent modes: {_delegatable_categories()}
"""
