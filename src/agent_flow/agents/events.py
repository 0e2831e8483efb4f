"""Observer registry for the orchestrator's lifecycle and task notifications."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from loguru import logger

from ..logging_utils import summarize_event

EVENT_NAMES = (
    "started",
    "stopped",
    "task_added",
    "worker_spawned",
    "worker_completed",
    "worker_failed",
    "task_completed",
    "task_failed",
    "error",
)

Handler = Callable[[Any], None]


class EventBus:
    """Synchronous observer registry for orchestrator notifications.

    Handlers run inline on the scheduling loop; one that raises is logged and
    the remaining handlers still run.  ``"*"`` subscribes to every event and
    receives ``(event_name, payload)``.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., None]]] = defaultdict(list)
        self.history: list[dict[str, Any]] = []
        self.history_limit = 500

    def on(self, event_name: str, handler: Callable[..., None]) -> None:
        if event_name != "*" and event_name not in EVENT_NAMES:
            raise ValueError(f"Unknown event '{event_name}'")
        self._handlers[event_name].append(handler)

    def off(self, event_name: str, handler: Callable[..., None]) -> bool:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def emit(self, event_name: str, payload: Any = None) -> None:
        summary = summarize_event(event_name, payload)
        self.history.append(summary)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]
        logger.debug("event {}", summary)

        for handler in list(self._handlers.get(event_name, [])):
            self._call(event_name, handler, payload)
        for handler in list(self._handlers.get("*", [])):
            self._call(event_name, handler, event_name, payload)

    @staticmethod
    def _call(event_name: str, handler: Callable[..., None], *args: Any) -> None:
        try:
            handler(*args)
        except Exception:
            logger.exception("Event handler for '{}' raised", event_name)
