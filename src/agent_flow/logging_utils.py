"""Configure loguru sinks and format scheduler events for logs."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
    "{message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def configure_logging(level: str = "INFO", *, log_file: Optional[Path] = None) -> None:
    """Configure loguru logger with the specified level.

    Args:
        level: Minimum level for the console sink.
        log_file: Optional path for a DEBUG-level file sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_CONSOLE_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level="DEBUG",
            format=_FILE_FORMAT,
            encoding="utf-8",
            enqueue=True,
        )


def _clip(text: str, limit: int = 240) -> str:
    return (text[:limit] + "…") if len(text) > limit else text


def summarize_event(event_name: str, payload: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of an orchestrator notification.

    Args:
        event_name: Notification name (``task_added``, ``worker_failed`` ...).
        payload: The task, worker record, or ``None`` that accompanied it.

    Returns:
        A dictionary suitable for logging or serialization.
    """
    d: dict[str, Any] = {"event": event_name}
    if payload is None:
        return d

    for attr in ("id", "task_id", "category", "priority", "delegated_by"):
        value = getattr(payload, attr, None)
        if value is not None:
            d[attr] = getattr(value, "value", value)

    status = getattr(payload, "status", None)
    if status is not None:
        d["status"] = getattr(status, "value", str(status))

    if event_name in {"worker_failed", "task_failed"}:
        d["error_type"] = getattr(payload, "error_type", None)
        d["error"] = _clip(str(getattr(payload, "error", "") or ""))

    if event_name == "worker_completed":
        duration = getattr(payload, "duration_seconds", None)
        if duration is not None:
            d["duration_s"] = round(float(duration), 3)

    if event_name == "task_added":
        deps = getattr(payload, "dependencies", None) or []
        d["deps_n"] = len(deps)

    return d
