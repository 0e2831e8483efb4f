"""Shared context store — the tag-indexed history fed back into new prompts.

Every task completion, failure and delegation appends an immutable
:class:`ContextEntry`.  Readers get frozen entries or truncated
:class:`ContextSummary` copies, so eviction never invalidates what a prompt
already captured.

Persistence is best effort: stores schedule a debounced flush of the whole log
to a JSON document keyed by producer id; write failures are logged and the
in-memory store keeps working.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from ..constants import (
    DEFAULT_CONTEXT_FLUSH_DELAY_SECONDS,
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_CONTEXT_MAX_AGE_SECONDS,
    DEFAULT_CONTEXT_MAX_ENTRIES,
    DEFAULT_CONTEXT_SUMMARY_CHARS,
)
from ..errors import PersistenceError
from ..io_utils import _atomic_write_json, _load_data_with_error, _render_json_for_prompt
from ..utils import _from_epoch, _now, _parse_iso, _short_id, _truncate


class ContextType(str, Enum):
    KNOWLEDGE = "knowledge"
    DECISION = "decision"
    ERROR = "error"
    RESULT = "result"
    DELEGATION = "delegation"


@dataclass(frozen=True)
class ContextEntry:
    """One immutable record in the shared history."""

    producer_id: str
    type: ContextType
    content: Any
    tags: tuple[str, ...] = ()
    id: str = field(default_factory=lambda: _short_id("ctx", 12))
    timestamp: str = field(default_factory=lambda: _now().isoformat())

    @property
    def timestamp_dt(self) -> datetime:
        return _parse_iso(self.timestamp) or datetime.min.replace(tzinfo=_now().tzinfo)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "producer_id": self.producer_id,
            "type": self.type.value,
            "content": self.content,
            "tags": list(self.tags),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, producer_id: Optional[str] = None) -> "ContextEntry":
        try:
            ctype = ContextType(str(data.get("type", "knowledge")))
        except ValueError:
            ctype = ContextType.KNOWLEDGE
        raw_ts = data.get("timestamp")
        if isinstance(raw_ts, (int, float)) and not isinstance(raw_ts, bool):
            ts: Optional[datetime] = _from_epoch(raw_ts)
        else:
            ts = _parse_iso(raw_ts)
        return cls(
            id=str(data.get("id") or _short_id("ctx", 12)),
            producer_id=str(data.get("producer_id") or producer_id or "global"),
            type=ctype,
            content=data.get("content"),
            tags=tuple(str(t) for t in (data.get("tags") or [])),
            timestamp=(ts or _now()).isoformat(),
        )


@dataclass(frozen=True)
class ContextSummary:
    """A truncated, prompt-ready view of a :class:`ContextEntry`."""

    id: str
    producer_id: str
    type: ContextType
    summary: str
    timestamp: str


class ContextStore:
    """Append-only, tag-indexed context log with age and count eviction.

    Parameters
    ----------
    path:
        JSON file for persistence; ``None`` keeps the store in memory only.
    max_entries:
        Global cap; the oldest entries are evicted beyond it.
    max_age_seconds:
        Entries older than this are evicted.
    flush_delay_seconds:
        Debounce window coalescing stores into one write.
    summary_chars:
        Content length kept by :meth:`get_context` summaries.
    clock:
        Returns the current aware ``datetime``; injectable for tests.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        max_entries: int = DEFAULT_CONTEXT_MAX_ENTRIES,
        max_age_seconds: float = DEFAULT_CONTEXT_MAX_AGE_SECONDS,
        flush_delay_seconds: float = DEFAULT_CONTEXT_FLUSH_DELAY_SECONDS,
        summary_chars: int = DEFAULT_CONTEXT_SUMMARY_CHARS,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.path = path
        self.max_entries = max(1, int(max_entries))
        self.max_age_seconds = float(max_age_seconds)
        self.flush_delay_seconds = max(0.0, float(flush_delay_seconds))
        self.summary_chars = int(summary_chars)
        self._clock = clock
        self._entries: list[ContextEntry] = []
        self._lock = threading.RLock()
        self._io_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._loaded = False
        self.last_error: Optional[PersistenceError] = None

    # -- lifecycle -----------------------------------------------------------

    def load(self) -> None:
        """Load the persisted document into memory (idempotent)."""
        with self._lock:
            if self._loaded:
                return
            self._loaded = True
            if self.path is None:
                return
            data, err = _load_data_with_error(self.path, {})
            if err:
                self._record_error(PersistenceError(f"Failed to load context: {err}", context={"path": str(self.path)}))
                return

            loaded: list[ContextEntry] = []
            for producer_id, raw_entries in data.items():
                if not isinstance(raw_entries, list):
                    continue
                for raw in raw_entries:
                    if isinstance(raw, dict):
                        loaded.append(ContextEntry.from_dict(raw, producer_id=str(producer_id)))
            loaded.sort(key=lambda e: e.timestamp_dt)
            self._entries = loaded + self._entries
            self._evict()
            logger.info("Context store loaded path={} entries={}", self.path, len(self._entries))

    def close(self) -> bool:
        """Cancel any pending debounced write and flush now."""
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        return self.flush()

    # -- writes --------------------------------------------------------------

    def store(
        self,
        producer_id: str,
        type: ContextType | str,
        content: Any,
        tags: Iterable[str] = (),
    ) -> ContextEntry:
        """Append a new entry, evict, and schedule a debounced flush."""
        entry = ContextEntry(
            producer_id=producer_id or "global",
            type=ContextType(getattr(type, "value", type)),
            content=content,
            tags=tuple(dict.fromkeys(str(t) for t in tags)),
            timestamp=self._clock().isoformat(),
        )
        with self._lock:
            self._entries.append(entry)
            self._evict()
        self._schedule_flush()
        return entry

    def _evict(self) -> None:
        cutoff = self._clock() - timedelta(seconds=self.max_age_seconds)
        kept = [e for e in self._entries if e.timestamp_dt >= cutoff]
        overflow = len(kept) - self.max_entries
        if overflow > 0:
            # Drop the globally oldest; ties keep insertion order.
            order = sorted(range(len(kept)), key=lambda i: (kept[i].timestamp_dt, i))
            dropped = set(order[:overflow])
            kept = [e for i, e in enumerate(kept) if i not in dropped]
        evicted = len(self._entries) - len(kept)
        if evicted:
            logger.debug("Context store evicted {} entr{}", evicted, "y" if evicted == 1 else "ies")
        self._entries = kept

    # -- reads ---------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self) -> list[ContextEntry]:
        with self._lock:
            return list(self._entries)

    def by_producer(self) -> dict[str, list[ContextEntry]]:
        out: dict[str, list[ContextEntry]] = {}
        for entry in self.entries():
            out.setdefault(entry.producer_id, []).append(entry)
        return out

    def summarize(self, content: Any) -> str:
        if isinstance(content, str):
            text = content
        else:
            text, _ = _render_json_for_prompt(content, max_chars=self.summary_chars + 1)
        return _truncate(text.strip(), self.summary_chars)

    def get_context(self, category: Any, limit: int = DEFAULT_CONTEXT_LIMIT) -> list[ContextSummary]:
        """Most recent entries tagged with *category*, newest first, summarized."""
        tag = str(getattr(category, "value", category))
        if limit <= 0:
            return []
        with self._lock:
            indexed = [(i, e) for i, e in enumerate(self._entries) if tag in e.tags]
        indexed.sort(key=lambda pair: (pair[1].timestamp_dt, pair[0]), reverse=True)
        return [
            ContextSummary(
                id=e.id,
                producer_id=e.producer_id,
                type=e.type,
                summary=self.summarize(e.content),
                timestamp=e.timestamp,
            )
            for _, e in indexed[:limit]
        ]

    def search(self, query: str, tags: Optional[Iterable[str]] = None) -> list[ContextEntry]:
        """Entries whose serialized content contains *query* (case-insensitive).

        With *tags*, an entry must also carry at least one of them.
        """
        needle = (query or "").lower()
        wanted = set(tags) if tags else None
        out: list[ContextEntry] = []
        for entry in self.entries():
            if wanted is not None and not wanted.intersection(entry.tags):
                continue
            try:
                haystack = json.dumps(entry.content, default=str).lower()
            except (TypeError, ValueError):
                haystack = str(entry.content).lower()
            if needle in haystack:
                out.append(entry)
        return out

    # -- persistence ---------------------------------------------------------

    def _schedule_flush(self) -> None:
        if self.path is None:
            return
        with self._lock:
            if self._timer is not None:
                return
            timer = threading.Timer(self.flush_delay_seconds, self._flush_from_timer)
            timer.daemon = True
            self._timer = timer
        timer.start()

    def _flush_from_timer(self) -> None:
        with self._lock:
            self._timer = None
        self.flush()

    @property
    def flush_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def flush(self) -> bool:
        """Write the full store now. Returns False (and logs) on I/O failure."""
        if self.path is None:
            return True
        with self._io_lock:
            payload = {
                producer: [e.to_dict() for e in entries]
                for producer, entries in self.by_producer().items()
            }
            try:
                _atomic_write_json(self.path, payload)
            except (OSError, TypeError, ValueError) as exc:
                self._record_error(
                    PersistenceError(
                        f"Failed to write context: {exc.__class__.__name__}: {exc}",
                        context={"path": str(self.path)},
                    )
                )
                return False
        logger.debug("Context store flushed path={} entries={}", self.path, sum(len(v) for v in payload.values()))
        return True

    def _record_error(self, error: PersistenceError) -> None:
        self.last_error = error
        logger.warning("{}", error.message)
