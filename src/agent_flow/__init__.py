"""Provide the public `agent_flow` package exports."""

from __future__ import annotations

from .agents import CallableExecutor, ContextStore, DelegationParser, ExecutionOutcome, Orchestrator, SubprocessExecutor
from .task_engine import Task, TaskCategory, TaskPriority, TaskQueue, TaskStatus

__all__ = [
    "CallableExecutor",
    "ContextStore",
    "DelegationParser",
    "ExecutionOutcome",
    "Orchestrator",
    "SubprocessExecutor",
    "Task",
    "TaskCategory",
    "TaskPriority",
    "TaskQueue",
    "TaskStatus",
]
