"""Chunked binary storage on SQLite.

Binaries are split into fixed-size chunks (``files`` + ``chunks`` tables)
so that a byte range can be served by reading only the chunks that
intersect it.
"""
from __future__ import annotations

import contextlib
import json
import logging
import queue
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 255 * 1024

_SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    id TEXT PRIMARY KEY,
    filename TEXT NOT NULL,
    content_type TEXT NOT NULL,
    length INTEGER NOT NULL,
    chunk_size INTEGER NOT NULL,
    upload_date TEXT NOT NULL,
    metadata TEXT
);
CREATE TABLE IF NOT EXISTS chunks (
    file_id TEXT NOT NULL,
    n INTEGER NOT NULL,
    data BLOB NOT NULL,
    PRIMARY KEY (file_id, n)
);
"""


class StorageError(RuntimeError):
    """The backing store failed or holds inconsistent data."""


class MediaFileNotFoundError(FileNotFoundError):
    """No stored binary exists for the reference."""


class InvalidRangeError(ValueError):
    """The requested byte range does not fit the stored binary."""


@dataclass(frozen=True, slots=True)
class ByteRange:
    """Inclusive byte interval ``[start, end]``."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True, slots=True)
class StoredFile:
    id: str
    filename: str
    content_type: str
    length: int
    chunk_size: int
    upload_date: datetime
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def chunk_count(self) -> int:
        if self.length <= 0:
            return 0
        return (self.length + self.chunk_size - 1) // self.chunk_size


class ConnectionPool:
    """Fixed set of SQLite connections shared by the whole process.

    Create one pool at startup and pass it to everything that needs the
    database.
    """

    def __init__(self, path: Path | str, size: int = 4, *, timeout: float = 30.0) -> None:
        if size <= 0:
            raise ValueError("Pool size must be positive")
        self._path = str(path)
        if self._path == ":memory:":
            # every in-memory connection is its own database
            size = 1
        else:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._idle: queue.Queue[sqlite3.Connection] = queue.Queue()
        self._all: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._closed = False
        for _ in range(size):
            connection = sqlite3.connect(self._path, timeout=timeout, check_same_thread=False)
            connection.row_factory = sqlite3.Row
            self._all.append(connection)
            self._idle.put(connection)
        with self.connection() as connection, connection:
            connection.executescript(_SCHEMA)

    @property
    def path(self) -> str:
        return self._path

    @property
    def size(self) -> int:
        return len(self._all)

    @property
    def closed(self) -> bool:
        return self._closed

    @contextlib.contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise StorageError("Connection pool is closed")
        try:
            connection = self._idle.get(timeout=self._timeout)
        except queue.Empty:
            raise StorageError("Timed out waiting for a database connection") from None
        try:
            yield connection
        finally:
            if connection.in_transaction:
                connection.rollback()
            self._idle.put(connection)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for connection in self._all:
            connection.close()


def _iter_source(source: bytes | bytearray | memoryview | BinaryIO, chunk_size: int) -> Iterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset : offset + chunk_size])
        return
    while True:
        # read() may return short; keep filling until a full chunk or EOF
        buffer = bytearray()
        while len(buffer) < chunk_size:
            data = source.read(chunk_size - len(buffer))
            if not data:
                break
            buffer.extend(data)
        if not buffer:
            return
        yield bytes(buffer)
        if len(buffer) < chunk_size:
            return


def _row_to_file(row: sqlite3.Row) -> StoredFile:
    metadata = json.loads(row["metadata"]) if row["metadata"] else {}
    return StoredFile(
        id=row["id"],
        filename=row["filename"],
        content_type=row["content_type"],
        length=int(row["length"]),
        chunk_size=int(row["chunk_size"]),
        upload_date=datetime.fromisoformat(row["upload_date"]),
        metadata=metadata,
    )


class ChunkedMediaStore:
    """Stores binaries as numbered chunks and reads back arbitrary ranges."""

    def __init__(self, pool: ConnectionPool, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("Chunk size must be positive")
        self._pool = pool
        self.chunk_size = int(chunk_size)

    def put(
        self,
        source: bytes | bytearray | memoryview | BinaryIO,
        *,
        filename: str,
        content_type: str,
        metadata: dict[str, object] | None = None,
    ) -> StoredFile:
        file_id = uuid.uuid4().hex
        uploaded = datetime.now(timezone.utc)
        length = 0
        try:
            with self._pool.connection() as connection, connection:
                for index, chunk in enumerate(_iter_source(source, self.chunk_size)):
                    connection.execute(
                        "INSERT INTO chunks (file_id, n, data) VALUES (?, ?, ?)",
                        (file_id, index, sqlite3.Binary(chunk)),
                    )
                    length += len(chunk)
                connection.execute(
                    "INSERT INTO files (id, filename, content_type, length, chunk_size, upload_date, metadata)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        file_id,
                        filename,
                        content_type,
                        length,
                        self.chunk_size,
                        uploaded.isoformat(),
                        json.dumps(metadata) if metadata else None,
                    ),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to store {filename}: {exc}") from exc
        logger.info("Stored %s as %s (%d bytes)", filename, file_id, length)
        return StoredFile(
            id=file_id,
            filename=filename,
            content_type=content_type,
            length=length,
            chunk_size=self.chunk_size,
            upload_date=uploaded,
            metadata=dict(metadata or {}),
        )

    def stat(self, file_id: str) -> StoredFile:
        try:
            with self._pool.connection() as connection:
                row = connection.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to look up {file_id}: {exc}") from exc
        if row is None:
            raise MediaFileNotFoundError(f"No stored file {file_id}")
        return _row_to_file(row)

    def get(
        self,
        file_id: str,
        byte_range: ByteRange | None = None,
    ) -> tuple[Iterator[bytes], int]:
        """Return an iterator over the requested bytes and the total length.

        The reference and the range are checked before returning; chunks are
        only read while the iterator is consumed.
        """

        stored = self.stat(file_id)
        total = stored.length
        if byte_range is None:
            if total == 0:
                return iter(()), 0
            byte_range = ByteRange(0, total - 1)
        else:
            byte_range = self._validate_range(byte_range, total)
        return self._iter_range(stored, byte_range), total

    def verify(self, file_id: str, byte_range: ByteRange | None = None) -> StoredFile:
        """Check that every chunk covering *byte_range* is present.

        Raises :class:`StorageError` for an incomplete chunk-set so callers can
        fail before streaming the first byte.
        """

        stored = self.stat(file_id)
        if stored.length == 0:
            return stored
        if byte_range is None:
            byte_range = ByteRange(0, stored.length - 1)
        else:
            byte_range = self._validate_range(byte_range, stored.length)
        first = byte_range.start // stored.chunk_size
        last = byte_range.end // stored.chunk_size
        try:
            with self._pool.connection() as connection:
                present = connection.execute(
                    "SELECT COUNT(*) FROM chunks WHERE file_id = ? AND n BETWEEN ? AND ?",
                    (file_id, first, last),
                ).fetchone()[0]
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to check chunks of {file_id}: {exc}") from exc
        expected = last - first + 1
        if present != expected:
            raise StorageError(
                f"Chunk-set {file_id} is incomplete: {present} of {expected} chunks present"
            )
        return stored

    def read(self, file_id: str, byte_range: ByteRange | None = None) -> bytes:
        iterator, _ = self.get(file_id, byte_range)
        return b"".join(iterator)

    def delete(self, file_id: str) -> None:
        """Remove the chunks and the file entry in one transaction."""

        stored = self.stat(file_id)
        expected = stored.chunk_count
        try:
            with self._pool.connection() as connection, connection:
                removed = connection.execute(
                    "DELETE FROM chunks WHERE file_id = ?", (file_id,)
                ).rowcount
                if removed != expected:
                    raise StorageError(
                        f"Chunk-set {file_id} is incomplete: removed {removed} of {expected} chunks"
                    )
                connection.execute("DELETE FROM files WHERE id = ?", (file_id,))
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete {file_id}: {exc}") from exc
        logger.info("Deleted chunk-set %s (%d chunks)", file_id, expected)

    # ----------------------------- implementation --------------------------
    @staticmethod
    def _validate_range(byte_range: ByteRange, total: int) -> ByteRange:
        start, end = int(byte_range.start), int(byte_range.end)
        if start < 0 or end < 0:
            raise InvalidRangeError("Byte range must not be negative")
        if start > end:
            raise InvalidRangeError(f"Range start {start} is after end {end}")
        if start >= total:
            raise InvalidRangeError(f"Range start {start} is beyond the length {total}")
        return ByteRange(start, min(end, total - 1))

    def _iter_range(self, stored: StoredFile, byte_range: ByteRange) -> Iterator[bytes]:
        size = stored.chunk_size
        first = byte_range.start // size
        last = byte_range.end // size
        for index in range(first, last + 1):
            data = self._read_chunk(stored.id, index)
            chunk_start = index * size
            expected = min(size, stored.length - chunk_start)
            if len(data) != expected:
                raise StorageError(
                    f"Chunk {index} of {stored.id} has {len(data)} bytes, expected {expected}"
                )
            lo = max(byte_range.start - chunk_start, 0)
            hi = min(byte_range.end - chunk_start, expected - 1) + 1
            yield data[lo:hi]

    def _read_chunk(self, file_id: str, index: int) -> bytes:
        try:
            with self._pool.connection() as connection:
                row = connection.execute(
                    "SELECT data FROM chunks WHERE file_id = ? AND n = ?", (file_id, index)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read chunk {index} of {file_id}: {exc}") from exc
        if row is None:
            raise StorageError(f"Chunk {index} of {file_id} is missing")
        return bytes(row["data"])


__all__ = [
    "ByteRange",
    "ChunkedMediaStore",
    "ConnectionPool",
    "DEFAULT_CHUNK_SIZE",
    "InvalidRangeError",
    "MediaFileNotFoundError",
    "StorageError",
    "StoredFile",
]
