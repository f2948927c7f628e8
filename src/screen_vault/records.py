"""Recording metadata and the repository tying it to stored binaries."""
from __future__ import annotations

import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import BinaryIO

from .storage import ChunkedMediaStore, ConnectionPool, MediaFileNotFoundError, StorageError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_DURATION_SECONDS = 180

_ID_PATTERN = re.compile(r"[0-9a-f]{32}")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS recordings (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    filename TEXT NOT NULL,
    file_id TEXT NOT NULL,
    size INTEGER NOT NULL,
    duration INTEGER NOT NULL,
    content_type TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

SORT_COLUMNS = {
    "createdAt": "created_at",
    "title": "title COLLATE NOCASE",
    "size": "size",
    "duration": "duration",
}


class InvalidRecordingIdError(ValueError):
    """The identifier is not a well-formed recording id."""


class RecordingNotFoundError(LookupError):
    """No recording exists for the identifier."""


class RecordingDeletionError(RuntimeError):
    """The recording's binary could not be removed; the record was kept."""


def is_valid_recording_id(value: object) -> bool:
    return isinstance(value, str) and _ID_PATTERN.fullmatch(value) is not None


def default_title(moment: datetime) -> str:
    return f"Recording {moment.strftime('%Y-%m-%d %H:%M:%S')}"


def _normalise_title(title: str | None, created_at: datetime) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        return default_title(created_at)
    if len(cleaned) > MAX_TITLE_LENGTH:
        raise ValueError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    return cleaned


def validate_recording_fields(
    *,
    title: str | None,
    filename: str,
    content_type: str,
    duration: int,
    created_at: datetime,
) -> str:
    """Check upload metadata and return the title to store."""

    if not filename.strip():
        raise ValueError("Filename must not be empty")
    if not content_type.startswith("video/"):
        raise ValueError("Content type must be a video type")
    if not (0 <= int(duration) <= MAX_DURATION_SECONDS):
        raise ValueError(f"Duration must be between 0 and {MAX_DURATION_SECONDS} seconds")
    return _normalise_title(title, created_at)


@dataclass(slots=True)
class RecordingRecord:
    id: str
    title: str
    filename: str
    file_id: str
    size: int
    duration: int
    content_type: str
    created_at: datetime

    def __post_init__(self) -> None:
        if not is_valid_recording_id(self.id):
            raise InvalidRecordingIdError(f"Invalid recording id: {self.id!r}")
        self.title = validate_recording_fields(
            title=self.title,
            filename=self.filename,
            content_type=self.content_type,
            duration=self.duration,
            created_at=self.created_at,
        )
        if int(self.size) < 0:
            raise ValueError("Size must not be negative")
        self.size = int(self.size)
        self.duration = int(self.duration)

    @property
    def url(self) -> str:
        return f"/recordings/{self.id}"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "filename": self.filename,
            "size": self.size,
            "duration": self.duration,
            "contentType": self.content_type,
            "createdAt": self.created_at.isoformat(),
            "url": self.url,
        }


@dataclass(slots=True)
class RecordingFilters:
    """Search and ordering for recording listings."""

    query: str | None = None
    sort: str = "createdAt"
    order: str = "desc"

    def __post_init__(self) -> None:
        if self.sort not in SORT_COLUMNS:
            raise ValueError(
                "Sort must be one of: " + ", ".join(sorted(SORT_COLUMNS))
            )
        order = (self.order or "").lower()
        if order not in {"asc", "desc"}:
            raise ValueError("Order must be 'asc' or 'desc'")
        self.order = order
        if self.query is not None:
            self.query = self.query.strip() or None


def _row_to_record(row: sqlite3.Row) -> RecordingRecord:
    return RecordingRecord(
        id=row["id"],
        title=row["title"],
        filename=row["filename"],
        file_id=row["file_id"],
        size=row["size"],
        duration=row["duration"],
        content_type=row["content_type"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class RecordingRepository:
    """Creates, lists and removes recordings together with their binaries."""

    def __init__(self, pool: ConnectionPool, store: ChunkedMediaStore) -> None:
        self._pool = pool
        self._store = store
        self._mutex = RLock()
        with self._pool.connection() as connection, connection:
            connection.executescript(_SCHEMA)

    @property
    def store(self) -> ChunkedMediaStore:
        return self._store

    def create(
        self,
        source: bytes | BinaryIO,
        *,
        filename: str,
        content_type: str,
        title: str | None = None,
        duration: int = 0,
        created_at: datetime | None = None,
    ) -> RecordingRecord:
        """Store the binary, then its record.

        If the record cannot be written the freshly stored binary is removed
        again so no orphaned chunk-set is left behind.
        """

        created = created_at or datetime.now(timezone.utc)
        cleaned_title = validate_recording_fields(
            title=title,
            filename=filename,
            content_type=content_type,
            duration=duration,
            created_at=created,
        )
        stored = self._store.put(
            source,
            filename=filename,
            content_type=content_type,
            metadata={"title": cleaned_title, "duration": int(duration)},
        )
        record = RecordingRecord(
            id=uuid.uuid4().hex,
            title=cleaned_title,
            filename=filename,
            file_id=stored.id,
            size=stored.length,
            duration=duration,
            content_type=content_type,
            created_at=created,
        )
        try:
            with self._mutex, self._pool.connection() as connection, connection:
                connection.execute(
                    "INSERT INTO recordings (id, title, filename, file_id, size, duration, content_type, created_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.title,
                        record.filename,
                        record.file_id,
                        record.size,
                        record.duration,
                        record.content_type,
                        record.created_at.isoformat(),
                    ),
                )
        except sqlite3.Error as exc:
            logger.error("Failed to save recording %s; removing its binary", record.id)
            try:
                self._store.delete(stored.id)
            except (StorageError, MediaFileNotFoundError):  # pragma: no cover - logging only
                logger.exception("Failed to remove orphaned chunk-set %s", stored.id)
            raise StorageError(f"Failed to save recording: {exc}") from exc
        logger.info("Created recording %s (%s, %d bytes)", record.id, record.title, record.size)
        return record

    def get(self, recording_id: str) -> RecordingRecord:
        if not is_valid_recording_id(recording_id):
            raise InvalidRecordingIdError(f"Invalid recording id: {recording_id!r}")
        try:
            with self._pool.connection() as connection:
                row = connection.execute(
                    "SELECT * FROM recordings WHERE id = ?", (recording_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to load recording {recording_id}: {exc}") from exc
        if row is None:
            raise RecordingNotFoundError(f"Recording {recording_id} not found")
        return _row_to_record(row)

    def list(self, filters: RecordingFilters | None = None) -> list[RecordingRecord]:
        filters = filters or RecordingFilters()
        sql = "SELECT * FROM recordings"
        params: list[object] = []
        if filters.query:
            needle = filters.query.lower()
            sql += " WHERE instr(lower(title), ?) > 0 OR instr(lower(filename), ?) > 0"
            params.extend([needle, needle])
        direction = "ASC" if filters.order == "asc" else "DESC"
        sql += f" ORDER BY {SORT_COLUMNS[filters.sort]} {direction}, id {direction}"
        try:
            with self._pool.connection() as connection:
                rows = connection.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list recordings: {exc}") from exc
        return [_row_to_record(row) for row in rows]

    def delete(self, recording_id: str) -> RecordingRecord:
        """Remove the binary first, then the record.

        A binary that cannot be removed leaves the record in place and raises
        :class:`RecordingDeletionError`. A binary that is already gone is
        logged and the record is removed anyway.
        """

        with self._mutex:
            record = self.get(recording_id)
            try:
                self._store.delete(record.file_id)
            except MediaFileNotFoundError:
                logger.warning(
                    "Chunk-set %s for recording %s was already missing",
                    record.file_id,
                    record.id,
                )
            except StorageError as exc:
                logger.error("Failed to delete chunk-set for recording %s: %s", record.id, exc)
                raise RecordingDeletionError(
                    f"Failed to delete recording {record.id}"
                ) from exc
            try:
                with self._pool.connection() as connection, connection:
                    connection.execute("DELETE FROM recordings WHERE id = ?", (record.id,))
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to delete recording {record.id}: {exc}") from exc
        logger.info("Deleted recording %s", record.id)
        return record


__all__ = [
    "InvalidRecordingIdError",
    "MAX_TITLE_LENGTH",
    "RecordingDeletionError",
    "RecordingFilters",
    "RecordingNotFoundError",
    "RecordingRecord",
    "RecordingRepository",
    "default_title",
    "is_valid_recording_id",
    "validate_recording_fields",
]
