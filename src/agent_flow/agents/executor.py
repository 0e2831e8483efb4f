"""Executor contract and the adapters shipped with the engine.

The orchestrator only needs ``await executor.execute(prompt, category)``
returning an :class:`ExecutionOutcome`; the hard timeout is applied by the
caller.  Two adapters are provided:

* :class:`SubprocessExecutor` runs a third-party CLI (``gemini``, ``codex``
  ...) with the prompt as the last argument or on stdin.
* :class:`CallableExecutor` wraps a plain or async function.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from loguru import logger

from ..task_engine.model import TaskCategory


@dataclass(frozen=True)
class ExecutionOutcome:
    success: bool
    output: str = ""
    error: Optional[str] = None
    files_created: tuple[str, ...] = ()
    files_modified: tuple[str, ...] = ()
    duration_seconds: float = 0.0

    @classmethod
    def ok(cls, output: str, **kwargs: Any) -> "ExecutionOutcome":
        return cls(success=True, output=output, **kwargs)

    @classmethod
    def fail(cls, error: str, **kwargs: Any) -> "ExecutionOutcome":
        return cls(success=False, error=error, **kwargs)


class Executor(Protocol):
    async def execute(self, prompt: str, category: TaskCategory) -> ExecutionOutcome:
        ...


# ---------------------------------------------------------------------------
# Callable adapter
# ---------------------------------------------------------------------------

ExecuteFn = Callable[[str, TaskCategory], Union[ExecutionOutcome, str, Awaitable[Union[ExecutionOutcome, str]]]]


class CallableExecutor:
    """Adapt ``fn(prompt, category)`` (sync or async) to the executor contract.

    A returned ``str`` is treated as successful output; exceptions propagate to
    the orchestrator, which records them as task failures.
    """

    def __init__(self, fn: ExecuteFn) -> None:
        self._fn = fn

    async def execute(self, prompt: str, category: TaskCategory) -> ExecutionOutcome:
        start = time.monotonic()
        value = self._fn(prompt, category)
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, ExecutionOutcome):
            return value
        return ExecutionOutcome.ok(str(value), duration_seconds=time.monotonic() - start)


# ---------------------------------------------------------------------------
# Subprocess adapter
# ---------------------------------------------------------------------------

_IGNORE_PARTS = {
    "node_modules",
    ".git",
    ".DS_Store",
    "dist",
    "build",
    ".next",
    "coverage",
    "__pycache__",
    ".venv",
    ".agent_flow",
    "tmp",
    "temp",
}


def _snapshot(root: Path, limit: int = 20000) -> dict[str, tuple[int, float]]:
    files: dict[str, tuple[int, float]] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in _IGNORE_PARTS]
        for name in filenames:
            if name in _IGNORE_PARTS or name.endswith(".log"):
                continue
            path = Path(dirpath) / name
            try:
                st = path.stat()
            except OSError:
                continue
            files[str(path.relative_to(root))] = (st.st_size, st.st_mtime)
            if len(files) >= limit:
                return files
    return files


def _diff(before: dict[str, tuple[int, float]], after: dict[str, tuple[int, float]]) -> tuple[list[str], list[str]]:
    created: list[str] = []
    modified: list[str] = []
    for path, stats in after.items():
        prev = before.get(path)
        if prev is None:
            created.append(path)
        elif prev != stats:
            modified.append(path)
    return sorted(created), sorted(modified)


@dataclass
class SubprocessExecutor:
    """Run an external CLI once per task.

    ``command`` is split with :func:`shlex.split`; the prompt is appended as the
    final argument unless ``prompt_via_stdin`` is set.  ``{category}`` in the
    command is replaced by the task category.  When ``track_files`` is on, the
    working directory is snapshotted (off the event loop) before and after to
    report created and modified files.  Workers sharing a directory see each
    other's changes: a file written by one concurrent task can be attributed
    to another.
    """

    command: str
    working_dir: Path = field(default_factory=Path.cwd)
    prompt_via_stdin: bool = False
    track_files: bool = False
    env: Optional[dict[str, str]] = None

    def _argv(self, prompt: str, category: TaskCategory) -> list[str]:
        argv = [part.replace("{category}", category.value) for part in shlex.split(self.command)]
        if not argv:
            raise ValueError("Executor command is empty")
        if not self.prompt_via_stdin:
            argv.append(prompt)
        return argv

    async def execute(self, prompt: str, category: TaskCategory) -> ExecutionOutcome:
        argv = self._argv(prompt, category)
        start = time.monotonic()
        before = await asyncio.to_thread(_snapshot, self.working_dir) if self.track_files else {}
        logger.debug("Running worker command: {} (category={})", argv[0], category.value)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.working_dir),
                stdin=asyncio.subprocess.PIPE if self.prompt_via_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env} if self.env else None,
            )
        except OSError as exc:
            return ExecutionOutcome.fail(
                f"Failed to spawn {argv[0]}: {exc}",
                duration_seconds=time.monotonic() - start,
            )

        try:
            stdout, stderr = await proc.communicate(
                prompt.encode("utf-8") if self.prompt_via_stdin else None
            )
        except asyncio.CancelledError:
            # Timeout or abort: do not leave the worker running.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        duration = time.monotonic() - start
        out_text = stdout.decode("utf-8", errors="replace")
        err_text = stderr.decode("utf-8", errors="replace")

        created: list[str] = []
        modified: list[str] = []
        if self.track_files:
            created, modified = _diff(before, await asyncio.to_thread(_snapshot, self.working_dir))

        if proc.returncode != 0:
            return ExecutionOutcome.fail(
                f"{argv[0]} exited with code {proc.returncode}: {err_text.strip()[-2000:]}",
                output=out_text,
                files_created=tuple(created),
                files_modified=tuple(modified),
                duration_seconds=duration,
            )
        return ExecutionOutcome.ok(
            out_text,
            files_created=tuple(created),
            files_modified=tuple(modified),
            duration_seconds=duration,
        )
