#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for agent-flow.

``agent-flow run`` submits one task and drives it (and everything it
delegates) to completion; ``agent-flow context`` prints the stored context
for a category.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .agents.context import ContextStore
from .agents.executor import SubprocessExecutor
from .agents.orchestrator import Orchestrator
from .agents.workflow import COORDINATOR_PREFIX
from .config import load_config
from .constants import CONTEXT_FILE, LOG_FILE, STATE_DIR_NAME
from .errors import AgentFlowError, ConfigurationError
from .logging_utils import configure_logging
from .task_engine.model import Task, TaskCategory, TaskPriority, TaskStatus

_STATUS_STYLES = {
    TaskStatus.PENDING: "[dim]pending[/dim]",
    TaskStatus.RUNNING: "[yellow]running[/yellow]",
    TaskStatus.COMPLETED: "[green]completed[/green]",
    TaskStatus.FAILED: "[red]failed[/red]",
}


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: INFO)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-flow run",
        description="Run a task and everything it delegates until the queue settles",
    )
    parser.add_argument("task", type=str, help="Task description")
    parser.add_argument(
        "--category",
        type=str,
        default=TaskCategory.ORCHESTRATOR.value,
        choices=[c.value for c in TaskCategory],
        help="Category of the initial task (default: orchestrator)",
    )
    parser.add_argument(
        "--priority",
        type=str,
        default=TaskPriority.HIGH.value,
        choices=[p.value for p in TaskPriority],
        help="Priority of the initial task (default: high)",
    )
    parser.add_argument(
        "--max-agents",
        type=int,
        default=None,
        help="Maximum concurrent workers (default: from config, else 10)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-task worker timeout in seconds (default: from config, else 300)",
    )
    parser.add_argument(
        "--command",
        type=str,
        default=None,
        help="Worker CLI command; the prompt is appended as the last argument",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the final task list as JSON instead of a table",
    )
    _add_common_args(parser)
    return parser


def _build_context_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-flow context",
        description="Show the most recent context entries for a category",
    )
    parser.add_argument("category", type=str, choices=[c.value for c in TaskCategory])
    parser.add_argument("--limit", type=int, default=10, help="Number of entries (default: 10)")
    parser.add_argument("--search", type=str, default=None, help="Substring filter over entry content")
    _add_common_args(parser)
    return parser


def _cli_overrides(args: argparse.Namespace) -> dict[str, dict[str, Any]]:
    overrides: dict[str, dict[str, Any]] = {}
    if args.max_agents is not None:
        overrides.setdefault("orchestrator", {})["max_concurrency"] = args.max_agents
    if args.timeout is not None:
        overrides.setdefault("executor", {})["timeout_seconds"] = args.timeout
    if args.command:
        overrides.setdefault("executor", {})["command"] = args.command
    return overrides


def _initial_description(task: str, category: str) -> str:
    if category == TaskCategory.ORCHESTRATOR.value and not task.startswith(COORDINATOR_PREFIX):
        return COORDINATOR_PREFIX + task
    return task


def _render_tasks(console: Console, tasks: list[Task], status: dict[str, Any]) -> None:
    table = Table(title="agent-flow run", show_header=True)
    table.add_column("Task ID", style="cyan")
    table.add_column("Category")
    table.add_column("Priority")
    table.add_column("Status", style="bold")
    table.add_column("Delegated by", style="dim")
    table.add_column("Error", style="red")
    for task in tasks:
        table.add_row(
            task.id,
            task.category.value,
            task.priority.value,
            _STATUS_STYLES.get(task.status, task.status.value),
            task.delegated_by or "",
            (task.error or "")[:80],
        )
    console.print(table)
    console.print(
        f"completed={status['completed_count']} failed={status['failed_count']} "
        f"pending={status['pending_count']}"
    )


def _report_error(args: argparse.Namespace, exc: AgentFlowError) -> None:
    if args.json:
        print(json.dumps({"error": exc.to_dict()}, indent=2, default=str))


def _run_command(args: argparse.Namespace, console: Optional[Console] = None) -> int:
    project_dir = args.project_dir.resolve()
    state_dir = project_dir / STATE_DIR_NAME
    configure_logging(args.log_level, log_file=state_dir / LOG_FILE)

    try:
        config = load_config(project_dir, _cli_overrides(args))
    except ConfigurationError as exc:
        logger.error("{}", exc.message)
        for err in exc.context.get("errors", []):
            logger.error("  {}: {}", ".".join(str(p) for p in err.get("loc", ())), err.get("msg"))
        _report_error(args, exc)
        return 2

    executor = SubprocessExecutor(
        config.executor.command,
        working_dir=project_dir,
        prompt_via_stdin=config.executor.prompt_via_stdin,
        track_files=config.executor.track_files,
        env=config.executor.env or None,
    )
    orchestrator = Orchestrator.from_config(config, executor, context_path=state_dir / CONTEXT_FILE)

    try:
        task_id = orchestrator.add_task(
            _initial_description(args.task, args.category),
            args.category,
            args.priority,
        )
    except AgentFlowError as exc:
        logger.error("{}", exc.message)
        _report_error(args, exc)
        return 2
    logger.info("Submitted {} ({})", task_id, args.category)

    try:
        status = asyncio.run(orchestrator.run_until_complete())
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130

    tasks = orchestrator.list_tasks()
    if args.json:
        print(json.dumps({"status": status, "tasks": [t.to_dict() for t in tasks]}, indent=2))
    else:
        _render_tasks(console or Console(), tasks, status)
    return 0 if status["failed_count"] == 0 else 1


def _context_command(args: argparse.Namespace, console: Optional[Console] = None) -> int:
    project_dir = args.project_dir.resolve()
    configure_logging(args.log_level)
    store = ContextStore(project_dir / STATE_DIR_NAME / CONTEXT_FILE)
    store.load()
    console = console or Console()

    table = Table(title=f"Context: {args.category}", show_header=True)
    table.add_column("Timestamp", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Producer")
    table.add_column("Summary")

    if args.search:
        entries = store.search(args.search, tags=[args.category])
        entries.sort(key=lambda e: e.timestamp_dt, reverse=True)
        for entry in entries[: args.limit]:
            table.add_row(entry.timestamp, entry.type.value, entry.producer_id, store.summarize(entry.content))
    else:
        for summary in store.get_context(args.category, args.limit):
            table.add_row(summary.timestamp, summary.type.value, summary.producer_id, summary.summary)

    console.print(table)
    return 1 if store.last_error else 0


def main(argv: list[str] | None = None) -> None:
    """Run the `agent-flow` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv and argv[0] == "run":
        raise SystemExit(_run_command(_build_run_parser().parse_args(argv[1:])))
    if argv and argv[0] == "context":
        raise SystemExit(_context_command(_build_context_parser().parse_args(argv[1:])))

    print("usage: agent-flow {run,context} ...", file=sys.stderr)
    print("  run TASK        run a task and its delegations to completion", file=sys.stderr)
    print("  context CAT     show stored context for a category", file=sys.stderr)
    raise SystemExit(0 if argv and argv[0] in {"-h", "--help"} else 2)


if __name__ == "__main__":
    main()
