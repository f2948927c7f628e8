"""HTTP responses for stored recordings with byte-range support."""
from __future__ import annotations

import logging
import re
from typing import Iterator
from urllib.parse import quote

from fastapi.responses import StreamingResponse

from .records import RecordingRecord
from .storage import ByteRange, ChunkedMediaStore, StorageError

logger = logging.getLogger(__name__)

_RANGE_PATTERN = re.compile(r"bytes=(\d+)-(\d*)")


class MalformedRangeError(ValueError):
    """The Range header cannot be parsed."""


class RangeNotSatisfiableError(ValueError):
    """The Range header is well formed but lies outside the resource."""

    def __init__(self, message: str, total_length: int) -> None:
        super().__init__(message)
        self.total_length = total_length

    @property
    def content_range(self) -> str:
        return f"bytes */{self.total_length}"


def parse_range_header(value: str | None, total_length: int) -> ByteRange | None:
    """Parse a single ``bytes=start-[end]`` range.

    Returns ``None`` when no header was sent. ``end`` is clamped to the last
    byte of the resource.
    """

    if value is None or not value.strip():
        return None
    match = _RANGE_PATTERN.fullmatch(value.strip())
    if match is None:
        raise MalformedRangeError(f"Malformed Range header: {value!r}")
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else total_length - 1
    if start >= total_length:
        raise RangeNotSatisfiableError(
            f"Range start {start} is beyond the length {total_length}", total_length
        )
    if end < start:
        raise RangeNotSatisfiableError(
            f"Range end {end} is before start {start}", total_length
        )
    return ByteRange(start, min(end, total_length - 1))


def content_disposition(filename: str) -> str:
    fallback = "".join(
        char if 32 <= ord(char) < 127 and char not in '"\\' else "_" for char in filename
    )
    header = f'inline; filename="{fallback}"'
    if fallback != filename:
        header += f"; filename*=UTF-8''{quote(filename)}"
    return header


def _guarded(first: bytes | None, rest: Iterator[bytes], recording_id: str) -> Iterator[bytes]:
    if first is not None:
        yield first
    try:
        yield from rest
    except StorageError as exc:
        # Headers are already sent; raising makes the server drop the connection.
        logger.error("Stream of recording %s aborted: %s", recording_id, exc)
        raise


def build_stream_response(
    store: ChunkedMediaStore,
    record: RecordingRecord,
    range_header: str | None,
) -> StreamingResponse:
    """Build a 200 or 206 response for *record*.

    Range and storage errors raise before any response exists: the chunks the
    range needs are checked and the first slice is read up front, so a broken
    chunk-set yields a server error instead of a short body.
    """

    stored = store.stat(record.file_id)
    total = stored.length
    byte_range = parse_range_header(range_header, total)
    store.verify(stored.id, byte_range)
    iterator, total = store.get(stored.id, byte_range)
    first = next(iterator, None)
    body = _guarded(first, iterator, record.id)

    content_type = stored.content_type or record.content_type
    if byte_range is None:
        headers = {
            "Content-Length": str(total),
            "Content-Disposition": content_disposition(record.filename),
            "Accept-Ranges": "bytes",
        }
        return StreamingResponse(body, status_code=200, media_type=content_type, headers=headers)
    headers = {
        "Content-Range": f"bytes {byte_range.start}-{byte_range.end}/{total}",
        "Accept-Ranges": "bytes",
        "Content-Length": str(byte_range.length),
    }
    return StreamingResponse(body, status_code=206, media_type=content_type, headers=headers)


__all__ = [
    "ByteRange",
    "MalformedRangeError",
    "RangeNotSatisfiableError",
    "build_stream_response",
    "content_disposition",
    "parse_range_header",
]
