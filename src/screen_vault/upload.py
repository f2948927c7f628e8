"""HTTP client for uploading and managing recordings."""
from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Iterable
from urllib.parse import unquote

import httpx

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

DEFAULT_TIMEOUT = 300.0
MAX_UPLOAD_BYTES = 100 * 1024 * 1024

_VIDEO_SUFFIXES = {".webm": "video/webm", ".mp4": "video/mp4", ".ogv": "video/ogg", ".mkv": "video/x-matroska"}
_FILENAME_STAR = re.compile(r"filename\*=UTF-8''([^;]+)", re.IGNORECASE)
_FILENAME = re.compile(r'filename="([^"]*)"', re.IGNORECASE)


class UploadError(RuntimeError):
    """Base class for failed requests against the recordings API."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkFailureError(UploadError):
    """Transport failure, timeout or server error; worth retrying."""

    retryable = True


class ValidationFailureError(UploadError):
    """The server rejected the request."""

    retryable = False


@dataclass(frozen=True, slots=True)
class UploadMetadata:
    title: str | None = None
    duration: int = 0


@dataclass(frozen=True, slots=True)
class UploadResult:
    id: str
    url: str
    message: str


@dataclass(frozen=True, slots=True)
class DownloadResult:
    path: Path
    size: int
    content_type: str


@dataclass(slots=True)
class BulkDeleteResult:
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


class _ProgressStream(httpx.AsyncByteStream):
    """Reports how much of a request body the transport has consumed.

    Percentages stop at 99 while streaming; the client reports 100 once the
    server has accepted the upload.
    """

    def __init__(self, inner: httpx.AsyncByteStream, total: int, callback: ProgressCallback) -> None:
        self._inner = inner
        self._total = total
        self._callback = callback
        self._sent = 0
        self.last_reported = -1

    def report(self, value: int) -> None:
        if value <= self.last_reported:
            return
        self.last_reported = value
        self._callback(value)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        self.report(0)
        async for chunk in self._inner:
            self._sent += len(chunk)
            if self._total > 0:
                self.report(min(99, self._sent * 100 // self._total))
            yield chunk

    async def aclose(self) -> None:
        await self._inner.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("detail", "error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return f"Server responded with {response.status_code}"


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    message = _error_message(response)
    if response.status_code >= 500:
        raise NetworkFailureError(message, status_code=response.status_code)
    raise ValidationFailureError(message, status_code=response.status_code)


def default_upload_filename() -> str:
    return f"recording-{int(time.time() * 1000)}.webm"


def guess_video_type(path: str | os.PathLike[str]) -> str | None:
    """Return the ``video/*`` type for *path*, or ``None`` for anything else."""

    suffix = Path(path).suffix.lower()
    if suffix in _VIDEO_SUFFIXES:
        return _VIDEO_SUFFIXES[suffix]
    guessed, _ = mimetypes.guess_type(str(path))
    if guessed and guessed.startswith("video/"):
        return guessed
    return None


def filename_from_disposition(header: str | None) -> str | None:
    if not header:
        return None
    match = _FILENAME_STAR.search(header)
    if match is not None:
        name = unquote(match.group(1).strip())
    else:
        match = _FILENAME.search(header)
        if match is None:
            return None
        name = match.group(1)
    # Never let the server pick a directory.
    name = Path(name.replace("\\", "/")).name
    return name or None


class UploadClient:
    """Async client for the ``/recordings`` endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "UploadClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._client.send(request)
        except httpx.TimeoutException as exc:
            raise NetworkFailureError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkFailureError(f"Network error: {exc}") from exc
        _raise_for_status(response)
        return response

    async def upload(
        self,
        payload: bytes,
        metadata: UploadMetadata | None = None,
        *,
        content_type: str = "video/webm",
        filename: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> UploadResult:
        metadata = metadata or UploadMetadata()
        fields = {"duration": str(int(metadata.duration)), "size": str(len(payload))}
        if metadata.title:
            fields["title"] = metadata.title
        request = self._client.build_request(
            "POST",
            "/recordings",
            data=fields,
            files={"recording": (filename or default_upload_filename(), payload, content_type)},
        )
        tracker: _ProgressStream | None = None
        if progress is not None:
            total = int(request.headers.get("Content-Length", "0") or 0)
            tracker = _ProgressStream(request.stream, total, progress)  # type: ignore[arg-type]
            request.stream = tracker
        response = await self._send(request)
        try:
            body = response.json()
            result = UploadResult(id=body["id"], url=body["url"], message=body.get("message", ""))
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationFailureError(
                "Unexpected upload response", status_code=response.status_code
            ) from exc
        if tracker is not None:
            tracker.report(100)
        logger.info("Uploaded recording %s (%d bytes)", result.id, len(payload))
        return result

    async def list_recordings(
        self,
        query: str | None = None,
        *,
        sort: str = "createdAt",
        order: str = "desc",
    ) -> list[dict[str, object]]:
        params = {"sort": sort, "order": order}
        if query:
            params["q"] = query
        response = await self._send(self._client.build_request("GET", "/recordings", params=params))
        return list(response.json())

    async def download(
        self,
        recording_id: str,
        dest: str | os.PathLike[str],
        *,
        progress: ProgressCallback | None = None,
    ) -> DownloadResult:
        """Stream a recording to *dest* without holding it in memory.

        When *dest* is a directory the file takes the name the server sends
        in ``Content-Disposition``, falling back to ``<id>.webm``. The data
        lands in a ``.part`` file that is renamed once complete.
        """

        target = Path(dest)
        written = 0
        try:
            async with self._client.stream("GET", f"/recordings/{recording_id}") as response:
                if response.status_code >= 400:
                    await response.aread()
                    _raise_for_status(response)
                if target.is_dir():
                    name = filename_from_disposition(response.headers.get("Content-Disposition"))
                    target = target / (name or f"{recording_id}.webm")
                total = int(response.headers.get("Content-Length", "0") or 0)
                partial = target.with_name(target.name + ".part")
                try:
                    with partial.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
                            written += len(chunk)
                            if progress is not None and total > 0:
                                progress(min(100, written * 100 // total))
                    if total and written != total:
                        raise NetworkFailureError(
                            f"Download ended after {written} of {total} bytes"
                        )
                    partial.replace(target)
                except BaseException:
                    partial.unlink(missing_ok=True)
                    raise
                content_type = response.headers.get("Content-Type", "application/octet-stream")
        except httpx.TimeoutException as exc:
            raise NetworkFailureError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkFailureError(f"Network error: {exc}") from exc
        logger.info("Downloaded recording %s to %s (%d bytes)", recording_id, target, written)
        return DownloadResult(path=target, size=written, content_type=content_type)

    async def delete(self, recording_id: str) -> str:
        response = await self._send(
            self._client.build_request("DELETE", f"/recordings/{recording_id}")
        )
        return str(response.json().get("message", ""))

    async def delete_many(self, recording_ids: Iterable[str]) -> BulkDeleteResult:
        """Delete all ids concurrently; one failure does not stop the others."""

        ids = list(recording_ids)
        outcomes = await asyncio.gather(
            *(self.delete(recording_id) for recording_id in ids),
            return_exceptions=True,
        )
        result = BulkDeleteResult()
        for recording_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, UploadError):
                result.failed[recording_id] = str(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.succeeded.append(recording_id)
        if result.failed:
            logger.warning(
                "Deleted %d recordings, %d failed", result.succeeded_count, result.failed_count
            )
        return result


# ----------------------------- retry bookkeeping ----------------------------
class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"
    FAILED = "failed"


@dataclass(slots=True)
class UploadJob:
    """One recording waiting to be uploaded, with its attempt history."""

    payload: bytes
    metadata: UploadMetadata = field(default_factory=UploadMetadata)
    content_type: str = "video/webm"
    filename: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: UploadStatus = UploadStatus.PENDING
    attempts: int = 0
    progress: int = 0
    error: str | None = None
    result: UploadResult | None = None

    @property
    def finished(self) -> bool:
        return self.status in {UploadStatus.SUCCESS, UploadStatus.FAILED}

    @classmethod
    def from_file(
        cls,
        path: str | os.PathLike[str],
        *,
        title: str | None = None,
        duration: int = 0,
        max_bytes: int = MAX_UPLOAD_BYTES,
    ) -> "UploadJob":
        """Build a job for a video file, applying the server's type and size limits locally."""

        path = Path(path)
        content_type = guess_video_type(path)
        if content_type is None:
            raise ValidationFailureError(
                f"{path.name}: Invalid file type. Only video files are allowed."
            )
        size = path.stat().st_size
        if size > max_bytes:
            raise ValidationFailureError(
                f"{path.name}: File too large. Maximum size is {max_bytes // (1024 * 1024)}MB."
            )
        return cls(
            payload=path.read_bytes(),
            metadata=UploadMetadata(title=title, duration=duration),
            content_type=content_type,
            filename=path.name,
        )


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.0
    backoff_factor: float = 2.0
    retry_validation_errors: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0 or self.backoff_factor < 1:
            raise ValueError("Backoff must be non-negative and must not shrink")

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * self.backoff_factor ** max(0, attempt - 1)

    def should_retry(self, error: UploadError, attempts: int) -> bool:
        if attempts >= self.max_attempts:
            return False
        return error.retryable or self.retry_validation_errors


async def upload_with_retry(
    client: UploadClient,
    job: UploadJob,
    policy: RetryPolicy | None = None,
    *,
    progress: ProgressCallback | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> UploadJob:
    """Upload *job* with at most ``policy.max_attempts`` attempts in total.

    Finished jobs (succeeded or given up) are returned untouched.
    """

    policy = policy or RetryPolicy()
    if job.finished:
        return job

    def _track(value: int) -> None:
        job.progress = value
        if progress is not None:
            progress(value)

    while True:
        job.attempts += 1
        job.status = UploadStatus.UPLOADING
        job.progress = 0
        job.error = None
        try:
            job.result = await client.upload(
                job.payload,
                job.metadata,
                content_type=job.content_type,
                filename=job.filename,
                progress=_track,
            )
        except UploadError as exc:
            job.error = str(exc)
            if not policy.should_retry(exc, job.attempts):
                job.status = UploadStatus.FAILED
                logger.error(
                    "Upload %s failed after %d attempt(s): %s", job.id, job.attempts, exc
                )
                return job
            job.status = UploadStatus.ERROR
            delay = policy.delay_for(job.attempts)
            logger.warning(
                "Upload %s attempt %d failed (%s); retrying in %.1fs",
                job.id,
                job.attempts,
                exc,
                delay,
            )
            if delay > 0:
                await sleep(delay)
            continue
        job.status = UploadStatus.SUCCESS
        job.progress = 100
        return job


__all__ = [
    "BulkDeleteResult",
    "DownloadResult",
    "MAX_UPLOAD_BYTES",
    "NetworkFailureError",
    "RetryPolicy",
    "UploadClient",
    "UploadError",
    "UploadJob",
    "UploadMetadata",
    "UploadResult",
    "UploadStatus",
    "ValidationFailureError",
    "filename_from_disposition",
    "guess_video_type",
    "upload_with_retry",
]
