"""Task model for the coordination engine.

A task is one unit of work handed to an external worker: a category that
selects the worker's role, a priority, and the ids of tasks that must complete
first. Tasks serialize to plain dicts so status snapshots can be written as
JSON or YAML.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from ..utils import _now_iso, _short_id


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskCategory(str, Enum):
    """Closed set of work-item kinds; also the worker role for the prompt."""

    ARCHITECT = "architect"
    CODER = "coder"
    TESTER = "tester"
    DEBUGGER = "debugger"
    SECURITY = "security"
    DOCUMENTATION = "documentation"
    INTEGRATOR = "integrator"
    MONITOR = "monitor"
    OPTIMIZER = "optimizer"
    ASK = "ask"
    DEVOPS = "devops"
    TUTORIAL = "tutorial"
    DATABASE = "database"
    SPECIFICATION = "specification"
    MCP = "mcp"
    ORCHESTRATOR = "orchestrator"
    DESIGNER = "designer"
    PRODUCT = "product"
    QA = "qa"
    REVIEWER = "reviewer"
    RESEARCH = "research"
    CLOUD = "cloud"
    SRE = "sre"
    AI = "ai"
    UX = "ux"
    MOBILE = "mobile"
    API = "api"
    PERFORMANCE = "performance"
    RELEASE = "release"

    @classmethod
    def parse(cls, raw: Any) -> Optional["TaskCategory"]:
        """Return the category for *raw* (case-insensitive) or ``None``."""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            return None
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return None


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def sort_key(self) -> int:
        """Lower sorts first: high=0, medium=1, low=2."""
        return {"high": 0, "medium": 1, "low": 2}[self.value]

    @classmethod
    def parse(cls, raw: Any) -> Optional["TaskPriority"]:
        if isinstance(raw, cls):
            return raw
        if raw is None:
            return None
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return None


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DelegationKind(str, Enum):
    """How a delegated task came to exist."""

    DELEGATION = "delegation"
    REQUEST = "request"
    REVIEW = "review"
    ITERATION = "iteration"
    FOLLOW_UP = "follow_up"
    WORKFLOW = "workflow"


# Monotonic lifecycle; pending -> failed covers dependency deadlock and abort.
_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.FAILED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


def _generate_id() -> str:
    """Short human-friendly task ID: ``task-<8hex>``."""
    return _short_id("task")


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A unit of requested work with a category, priority and dependency set."""

    # Identity
    id: str = field(default_factory=_generate_id)
    description: str = ""

    # Classification
    category: TaskCategory = TaskCategory.CODER
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING

    # Dependencies (ids that may not exist yet)
    dependencies: list[str] = field(default_factory=list)

    # Provenance
    delegated_by: Optional[str] = None
    delegation_kind: Optional[DelegationKind] = None
    created_at: str = field(default_factory=_now_iso)

    # Execution tracking (populated at runtime)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    worker_id: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    unmet_dependency_retries: int = 0

    # Extensible metadata
    metadata: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        data: dict[str, Any] = {}
        for k, v in asdict(self).items():
            if isinstance(v, Enum):
                data[k] = v.value
            else:
                data[k] = v
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)  # shallow copy

        def _enum(enum_cls: type[Enum], key: str, default: Optional[Enum]) -> Optional[Enum]:
            raw = d.pop(key, None)
            if raw is None:
                return default
            if isinstance(raw, enum_cls):
                return raw
            try:
                return enum_cls(str(raw))
            except (ValueError, KeyError):
                return default

        category = _enum(TaskCategory, "category", TaskCategory.CODER)
        priority = _enum(TaskPriority, "priority", TaskPriority.MEDIUM)
        status = _enum(TaskStatus, "status", TaskStatus.PENDING)
        kind = _enum(DelegationKind, "delegation_kind", None)

        return cls(
            id=str(d.pop("id", None) or _generate_id()),
            description=str(d.pop("description", "") or ""),
            category=category,  # type: ignore[arg-type]
            priority=priority,  # type: ignore[arg-type]
            status=status,  # type: ignore[arg-type]
            dependencies=[str(x) for x in (d.pop("dependencies", []) or [])],
            delegated_by=d.pop("delegated_by", None),
            delegation_kind=kind,  # type: ignore[arg-type]
            created_at=str(d.pop("created_at", None) or _now_iso()),
            started_at=d.pop("started_at", None),
            completed_at=d.pop("completed_at", None),
            worker_id=d.pop("worker_id", None),
            result=d.pop("result", None),
            error=d.pop("error", None),
            error_type=d.pop("error_type", None),
            unmet_dependency_retries=int(d.pop("unmet_dependency_retries", 0) or 0),
            metadata=dict(d.pop("metadata", {}) or {}),
        )

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def can_transition(self, new_status: TaskStatus) -> bool:
        return new_status in _VALID_TRANSITIONS[self.status]

    def transition(self, new_status: TaskStatus) -> None:
        """Move to *new_status* with timestamp bookkeeping.

        Raises ``ValueError`` for a non-monotonic transition.
        """
        if not self.can_transition(new_status):
            raise ValueError(
                f"Invalid transition for {self.id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        if new_status == TaskStatus.RUNNING:
            self.started_at = _now_iso()
        elif new_status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            self.completed_at = _now_iso()

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)
