"""Task model, category policy and the in-memory dependency-aware queue."""

from .model import DelegationKind, Task, TaskCategory, TaskPriority, TaskStatus
from .policy import CategoryPolicy
from .queue import TaskQueue

__all__ = [
    "CategoryPolicy",
    "DelegationKind",
    "Task",
    "TaskCategory",
    "TaskPriority",
    "TaskQueue",
    "TaskStatus",
]
