"""Load optional engine configuration from `.agent_flow/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from .agents.workflow import WorkflowStep
from .constants import (
    CONFIG_FILE,
    DEFAULT_COMPLETED_TASK_MAX_AGE_SECONDS,
    DEFAULT_CONFLICT_GROUPS,
    DEFAULT_CONTEXT_FLUSH_DELAY_SECONDS,
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_CONTEXT_MAX_AGE_SECONDS,
    DEFAULT_CONTEXT_MAX_ENTRIES,
    DEFAULT_CONTEXT_SUMMARY_CHARS,
    DEFAULT_DEPENDENCY_RETRY_INTERVAL_SECONDS,
    DEFAULT_EXECUTOR_COMMAND,
    DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
    DEFAULT_INDEPENDENT_CATEGORIES,
    DEFAULT_LOOP_ERROR_BACKOFF_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_UNMET_DEPENDENCY_RETRIES,
    DEFAULT_SEQUENTIAL_CATEGORIES,
    STATE_DIR_NAME,
)
from .errors import ConfigurationError
from .io_utils import _load_data_with_error
from .task_engine.model import TaskCategory, TaskPriority
from .task_engine.policy import CategoryPolicy


def _check_category(value: str) -> str:
    cat = TaskCategory.parse(value)
    if cat is None:
        raise ValueError(f"unknown category '{value}'")
    return cat.value


class OrchestratorSettings(BaseModel):
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    max_unmet_dependency_retries: int = Field(default=DEFAULT_MAX_UNMET_DEPENDENCY_RETRIES, ge=1)
    dependency_retry_interval_seconds: float = Field(default=DEFAULT_DEPENDENCY_RETRY_INTERVAL_SECONDS, ge=0)
    loop_error_backoff_seconds: float = Field(default=DEFAULT_LOOP_ERROR_BACKOFF_SECONDS, ge=0)
    completed_task_max_age_seconds: float = Field(default=DEFAULT_COMPLETED_TASK_MAX_AGE_SECONDS, gt=0)
    follow_up_rules: bool = True


class ContextSettings(BaseModel):
    enabled: bool = True
    max_entries: int = Field(default=DEFAULT_CONTEXT_MAX_ENTRIES, ge=1)
    max_age_seconds: float = Field(default=DEFAULT_CONTEXT_MAX_AGE_SECONDS, gt=0)
    flush_delay_seconds: float = Field(default=DEFAULT_CONTEXT_FLUSH_DELAY_SECONDS, ge=0)
    summary_chars: int = Field(default=DEFAULT_CONTEXT_SUMMARY_CHARS, ge=1)
    prompt_limit: int = Field(default=DEFAULT_CONTEXT_LIMIT, ge=0)


class ExecutorSettings(BaseModel):
    command: str = DEFAULT_EXECUTOR_COMMAND
    timeout_seconds: float = Field(default=DEFAULT_EXECUTOR_TIMEOUT_SECONDS, gt=0)
    prompt_via_stdin: bool = False
    track_files: bool = True
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("executor command must not be empty")
        return value


class CategorySettings(BaseModel):
    sequential: list[str] = Field(default_factory=lambda: list(DEFAULT_SEQUENTIAL_CATEGORIES))
    conflict_groups: list[list[str]] = Field(default_factory=lambda: [list(g) for g in DEFAULT_CONFLICT_GROUPS])
    independent: list[str] = Field(default_factory=lambda: list(DEFAULT_INDEPENDENT_CATEGORIES))
    role_prompts: dict[str, str] = Field(default_factory=dict)

    @field_validator("sequential", "independent")
    @classmethod
    def _known(cls, values: list[str]) -> list[str]:
        return [_check_category(v) for v in values]

    @field_validator("conflict_groups")
    @classmethod
    def _known_groups(cls, groups: list[list[str]]) -> list[list[str]]:
        return [[_check_category(v) for v in group] for group in groups]

    @field_validator("role_prompts")
    @classmethod
    def _known_roles(cls, prompts: dict[str, str]) -> dict[str, str]:
        return {_check_category(k): v for k, v in prompts.items()}

    def policy(self) -> CategoryPolicy:
        return CategoryPolicy.build(
            sequential=self.sequential,
            conflict_groups=self.conflict_groups,
            independent=self.independent,
        )


class WorkflowTaskSettings(BaseModel):
    category: str
    description: str
    priority: str = "medium"
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("category")
    @classmethod
    def _category(cls, value: str) -> str:
        return _check_category(value)

    @field_validator("dependencies")
    @classmethod
    def _deps(cls, values: list[str]) -> list[str]:
        return [_check_category(v) for v in values]

    @field_validator("priority")
    @classmethod
    def _priority(cls, value: str) -> str:
        prio = TaskPriority.parse(value)
        if prio is None:
            raise ValueError(f"unknown priority '{value}'")
        return prio.value

    @field_validator("description")
    @classmethod
    def _description(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("workflow task description must not be empty")
        return value.strip()


class WorkflowSettings(BaseModel):
    enabled: bool = True
    tasks: list[WorkflowTaskSettings] = Field(default_factory=list)

    def steps(self) -> Optional[list[WorkflowStep]]:
        """Configured steps, or ``None`` when the minimal set should be used."""
        if not self.tasks:
            return None
        return [
            WorkflowStep(
                category=TaskCategory(t.category),
                description=t.description,
                priority=TaskPriority(t.priority),
                depends_on=tuple(TaskCategory(d) for d in t.dependencies),
            )
            for t in self.tasks
        ]


class AgentFlowConfig(BaseModel):
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    categories: CategorySettings = Field(default_factory=CategorySettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)


def config_path(project_dir: Path) -> Path:
    return project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE


def load_config(project_dir: Path, overrides: Optional[dict[str, Any]] = None) -> AgentFlowConfig:
    """Load and validate the optional config file.

    Args:
        project_dir: Repository root directory.
        overrides: Section-level values (e.g. from CLI flags) merged on top.

    Returns:
        The validated configuration; defaults when the file is missing.

    Raises:
        ConfigurationError: The file is unreadable or fails validation.
    """
    path = config_path(project_dir)
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigurationError(f"Failed to read config: {err}", context={"path": str(path)})

    merged: dict[str, Any] = {k: dict(v) if isinstance(v, dict) else v for k, v in data.items()}
    for section, values in (overrides or {}).items():
        base = merged.get(section)
        merged[section] = {**(base if isinstance(base, dict) else {}), **values}

    try:
        return AgentFlowConfig.model_validate(merged)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"Invalid config {path.name}: {exc.error_count()} error(s)",
            context={"path": str(path), "errors": exc.errors(include_url=False)},
        ) from exc
