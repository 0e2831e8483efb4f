"""Scheduling loop, delegation parser, context store and worker adapters."""

from .context import ContextEntry, ContextStore, ContextSummary, ContextType
from .delegation import DelegationParser, DelegationRequest, FollowUpRuleSet, ParseResult, parse_markers
from .events import EventBus
from .executor import CallableExecutor, ExecutionOutcome, Executor, SubprocessExecutor
from .orchestrator import Orchestrator, OrchestratorState, WorkerRecord, WorkerStatus
from .workflow import WorkflowStep, expand_workflow

__all__ = [
    "CallableExecutor",
    "ContextEntry",
    "ContextStore",
    "ContextSummary",
    "ContextType",
    "DelegationParser",
    "DelegationRequest",
    "EventBus",
    "ExecutionOutcome",
    "Executor",
    "FollowUpRuleSet",
    "Orchestrator",
    "OrchestratorState",
    "ParseResult",
    "SubprocessExecutor",
    "WorkerRecord",
    "WorkerStatus",
    "WorkflowStep",
    "expand_workflow",
    "parse_markers",
]
