"""Error taxonomy shared by the queue, scheduler, parser and context store."""

from __future__ import annotations

from typing import Any, Optional


class AgentFlowError(Exception):
    """Base error carrying a stable ``code`` and optional structured context."""

    code = "AGENT_FLOW_ERROR"

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class ValidationError(AgentFlowError):
    """A task submission was malformed and rejected synchronously."""

    code = "VALIDATION_ERROR"


class DependencyDeadlock(AgentFlowError):
    """A task's dependencies stayed unsatisfiable past the retry bound."""

    code = "DEPENDENCY_DEADLOCK"

    def __init__(self, task_id: str, missing: list[str], retries: int) -> None:
        super().__init__(
            f"Task {task_id} gave up after {retries} retries waiting on {', '.join(missing) or 'dependencies'}",
            context={"task_id": task_id, "missing": list(missing), "retries": retries},
        )
        self.task_id = task_id
        self.missing = list(missing)
        self.retries = retries


class ExecutorError(AgentFlowError):
    """The external worker returned a failure or did not answer in time."""

    code = "EXECUTOR_ERROR"

    def __init__(self, message: str, *, task_id: Optional[str] = None, timed_out: bool = False) -> None:
        super().__init__(message, context={"task_id": task_id, "timed_out": timed_out})
        self.task_id = task_id
        self.timed_out = timed_out


class ParseError(AgentFlowError):
    """A delegation marker segment could not be parsed and was dropped."""

    code = "PARSE_ERROR"

    def __init__(self, message: str, *, segment: str = "", position: int = -1) -> None:
        super().__init__(message, context={"segment": segment, "position": position})
        self.segment = segment
        self.position = position


class PersistenceError(AgentFlowError):
    """Reading or writing durable state failed; in-memory state is unaffected."""

    code = "PERSISTENCE_ERROR"


class ConfigurationError(AgentFlowError):
    code = "CONFIGURATION_ERROR"


class OrchestratorStateError(AgentFlowError):
    code = "STATE_ERROR"
