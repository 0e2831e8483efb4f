"""Defaults, file names and built-in category tables."""

STATE_DIR_NAME = ".agent_flow"
CONFIG_FILE = "config.yaml"
CONTEXT_FILE = "context.json"
LOG_FILE = "agent_flow.log"

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 300.0
DEFAULT_EXECUTOR_COMMAND = "gemini --yolo --prompt"

DEFAULT_MAX_UNMET_DEPENDENCY_RETRIES = 50
DEFAULT_DEPENDENCY_RETRY_INTERVAL_SECONDS = 0.5
DEFAULT_LOOP_ERROR_BACKOFF_SECONDS = 1.0
DEFAULT_COMPLETED_TASK_MAX_AGE_SECONDS = 24 * 60 * 60

DEFAULT_CONTEXT_MAX_ENTRIES = 1000
DEFAULT_CONTEXT_MAX_AGE_SECONDS = 7 * 24 * 60 * 60
DEFAULT_CONTEXT_FLUSH_DELAY_SECONDS = 5.0
DEFAULT_CONTEXT_SUMMARY_CHARS = 200
DEFAULT_CONTEXT_LIMIT = 10

ERROR_TYPE_EXECUTOR_FAILED = "executor_failed"
ERROR_TYPE_EXECUTOR_TIMEOUT = "executor_timeout"
ERROR_TYPE_EXECUTOR_EXCEPTION = "executor_exception"
ERROR_TYPE_DEPENDENCY_DEADLOCK = "dependency_deadlock"
ERROR_TYPE_CANCELLED = "cancelled"

# Category dispatch policy defaults; overridable from config.yaml.
DEFAULT_SEQUENTIAL_CATEGORIES = ("orchestrator",)
DEFAULT_CONFLICT_GROUPS = (
    ("coder", "integrator"),
    ("architect", "designer"),
)
DEFAULT_INDEPENDENT_CATEGORIES = (
    "documentation",
    "tutorial",
    "specification",
    "ask",
    "security",
    "monitor",
    "optimizer",
    "devops",
    "qa",
    "reviewer",
    "research",
    "ux",
    "performance",
    "release",
)

# Workflow dependencies that must be honoured when expanding a coordinator's
# default workflow into tasks; any other declared dependency is dropped.
CRITICAL_WORKFLOW_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "coder": ("architect", "specification"),
    "integrator": ("coder",),
    "tester": ("coder", "integrator"),
    "devops": ("tester",),
    "optimizer": ("coder",),
    "mobile": ("designer", "api"),
    "cloud": ("architect",),
    "sre": ("devops", "monitor"),
    "ai": ("research", "coder"),
    "performance": ("coder",),
    "release": ("tester", "devops"),
}
