"""Persistent event log for recording and storage activity.

Entries are kept in memory up to a fixed capacity and, when a path is
configured, appended to a JSON-lines file that is replayed on start-up.
Every entry belongs to one of :data:`CATEGORIES`.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque

logger = logging.getLogger(__name__)

CATEGORIES = ("capture", "recordings", "storage", "system")
DEFAULT_CATEGORY = "system"


class UnknownCategoryError(ValueError):
    """Raised for a category outside :data:`CATEGORIES`."""

    def __init__(self, category: str) -> None:
        super().__init__(
            f"Unknown log category {category!r}; expected one of {', '.join(CATEGORIES)}"
        )
        self.category = category


def normalise_category(category: str | None) -> str:
    """Return the canonical form of *category*.

    Blank values fall back to :data:`DEFAULT_CATEGORY`; matching ignores case
    and surrounding whitespace.
    """

    cleaned = (category or "").strip().lower()
    if not cleaned:
        return DEFAULT_CATEGORY
    if cleaned not in CATEGORIES:
        raise UnknownCategoryError(category or "")
    return cleaned


@dataclass(slots=True)
class SystemLogEntry:
    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "SystemLogEntry | None":
        """Rebuild an entry from a persisted line; ``None`` when unusable."""

        if not isinstance(payload, dict):
            return None
        event, message = payload.get("event"), payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            category = normalise_category(payload.get("category"))
        except (UnknownCategoryError, AttributeError):
            category = DEFAULT_CATEGORY
        timestamp = payload.get("timestamp")
        metadata = payload.get("metadata")
        return cls(
            timestamp=float(timestamp) if isinstance(timestamp, (int, float)) else time.time(),
            category=category,
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class SystemLog:
    """Bounded append-only log, mirrored to a JSONL file when a path is set."""

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._path = self._prepare(Path(path)) if path is not None else None
        if self._path is not None:
            self._replay(self._path)

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Append a new event and return the stored entry.

        Raises :class:`UnknownCategoryError` for a category outside
        :data:`CATEGORIES`.
        """

        entry = SystemLogEntry(
            timestamp=time.time(),
            category=normalise_category(category),
            event=event,
            message=message,
            metadata={k: v for k, v in (metadata or {}).items() if v is not None} or None,
        )
        with self._lock:
            self._entries.append(entry)
            if self._path is not None:
                self._write(self._path, entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[SystemLogEntry]:
        """Return the most recent entries, oldest first.

        *category* narrows the result and must be one of :data:`CATEGORIES`.
        """

        wanted = normalise_category(category) if category and category.strip() else None
        with self._lock:
            entries = [entry for entry in self._entries if wanted in (None, entry.category)]
        if limit is not None:
            entries = entries[-max(1, limit):]
        return entries

    # ----------------------------- implementation --------------------------
    @staticmethod
    def _prepare(path: Path) -> Path | None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - filesystem errors are rare
            logger.warning("System log disabled; cannot create %s: %s", path.parent, exc)
            return None
        return path

    def _replay(self, path: Path) -> None:
        if not path.exists():
            return
        skipped = 0
        try:
            with path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    try:
                        entry = SystemLogEntry.from_dict(json.loads(line))
                    except ValueError:
                        entry = None
                    if entry is None:
                        skipped += 1
                        continue
                    self._entries.append(entry)
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load system log: %s", exc)
        if skipped:
            logger.debug("Skipped %d unreadable system log line(s) in %s", skipped, path)

    @staticmethod
    def _write(path: Path, entry: SystemLogEntry) -> None:
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log: %s", exc)


__all__ = [
    "CATEGORIES",
    "SystemLog",
    "SystemLogEntry",
    "UnknownCategoryError",
    "normalise_category",
]
