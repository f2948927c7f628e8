"""FastAPI application serving stored screen recordings."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import BinaryIO

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import AppConfig, load_config
from .records import (
    InvalidRecordingIdError,
    RecordingDeletionError,
    RecordingFilters,
    RecordingNotFoundError,
    RecordingRepository,
)
from .storage import ChunkedMediaStore, ConnectionPool, MediaFileNotFoundError, StorageError
from .streaming import MalformedRangeError, RangeNotSatisfiableError, build_stream_response
from .system_log import SystemLog, UnknownCategoryError
from .version import APP_VERSION

_EXTENSIONS = {"video/webm": ".webm", "video/mp4": ".mp4", "video/ogg": ".ogv"}


class RecordingPayload(BaseModel):
    id: str
    title: str
    filename: str
    size: int
    duration: int
    contentType: str
    createdAt: str
    url: str


class UploadResponse(BaseModel):
    message: str
    id: str
    url: str


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str
    version: str


def generate_filename(content_type: str, moment: datetime | None = None) -> str:
    """Server-side name for an uploaded recording."""

    moment = moment or datetime.now(timezone.utc)
    stamp = moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"
    base_type = content_type.split(";", 1)[0].strip().lower()
    return f"recording-{stamp}{_EXTENSIONS.get(base_type, '.webm')}"


def _measure(handle: BinaryIO) -> int:
    handle.seek(0, 2)
    size = handle.tell()
    handle.seek(0)
    return size


def _parse_duration(value: str | None, limit: int) -> int:
    if value is None or not value.strip():
        return 0
    try:
        duration = float(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Duration must be numeric") from None
    if duration != duration or not (0 <= duration <= limit):
        raise HTTPException(
            status_code=400,
            detail=f"Duration must be between 0 and {limit} seconds",
        )
    return int(round(duration))


def create_app(
    config: AppConfig | None = None,
    *,
    pool: ConnectionPool | None = None,
    store: ChunkedMediaStore | None = None,
    repository: RecordingRepository | None = None,
    system_log: SystemLog | None = None,
) -> FastAPI:
    app = FastAPI(title="ScreenVault", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config = config or load_config()
    owns_pool = pool is None and repository is None
    if repository is None:
        if pool is None:
            pool = ConnectionPool(config.database_path, config.pool_size)
        if store is None:
            store = ChunkedMediaStore(pool, chunk_size=config.chunk_size)
        repository = RecordingRepository(pool, store)
    else:
        store = repository.store
    if system_log is None:
        system_log = SystemLog(config.system_log_path, max_entries=config.system_log_entries)

    app.state.config = config
    app.state.repository = repository
    app.state.store = store
    app.state.system_log = system_log

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        system_log.record("system", "startup", "ScreenVault starting up.")

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        system_log.record("system", "shutdown", "ScreenVault shutting down.")
        if owns_pool and pool is not None:
            pool.close()

    # ------------------------------ ambient --------------------------------
    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", version=APP_VERSION)

    @app.get("/api/logs")
    async def logs(
        limit: int | None = Query(None, ge=1, le=1000),
        category: str | None = None,
    ) -> dict[str, object]:
        try:
            entries = system_log.tail(limit, category=category)
        except UnknownCategoryError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"entries": [entry.to_dict() for entry in entries]}

    # ----------------------------- recordings ------------------------------
    @app.get("/recordings", response_model=list[RecordingPayload])
    async def list_recordings(
        q: str | None = None,
        sort: str = "createdAt",
        order: str = "desc",
    ) -> list[dict[str, object]]:
        try:
            filters = RecordingFilters(query=q, sort=sort, order=order)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            records = await asyncio.to_thread(repository.list, filters)
        except StorageError as exc:
            logger.exception("Failed to list recordings")
            raise HTTPException(status_code=500, detail="Failed to fetch recordings") from exc
        return [record.to_dict() for record in records]

    @app.post("/recordings", response_model=UploadResponse)
    async def upload_recording(
        recording: UploadFile | None = File(None),
        title: str | None = Form(None),
        duration: str | None = Form(None),
        size: str | None = Form(None),
    ) -> UploadResponse:
        if recording is None:
            raise HTTPException(status_code=400, detail="No file provided")
        content_type = (recording.content_type or "").strip()
        if not content_type.lower().startswith("video/"):
            raise HTTPException(
                status_code=400,
                detail="Invalid file type. Only video files are allowed.",
            )
        actual_size = await asyncio.to_thread(_measure, recording.file)
        if actual_size > config.max_upload_bytes:
            limit_mb = config.max_upload_bytes // (1024 * 1024)
            raise HTTPException(
                status_code=400,
                detail=f"File too large. Maximum size is {limit_mb}MB.",
            )
        seconds = _parse_duration(duration, config.max_duration_seconds)
        if size and size.strip() != str(actual_size):
            logger.debug("Declared size %r differs from received %d bytes", size, actual_size)

        filename = generate_filename(content_type)
        try:
            record = await asyncio.to_thread(
                repository.create,
                recording.file,
                filename=filename,
                content_type=content_type,
                title=title,
                duration=seconds,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StorageError as exc:
            logger.exception("Failed to store upload %s", filename)
            system_log.record(
                "storage",
                "upload_failed",
                "Failed to store uploaded recording.",
                metadata={"filename": filename, "error": str(exc)},
            )
            raise HTTPException(status_code=500, detail="Failed to upload recording") from exc
        system_log.record(
            "recordings",
            "uploaded",
            f"Recording '{record.title}' uploaded.",
            metadata={"id": record.id, "size": record.size, "duration": record.duration},
        )
        return UploadResponse(
            message="Recording uploaded successfully",
            id=record.id,
            url=record.url,
        )

    @app.get("/recordings/{recording_id}")
    async def stream_recording(
        recording_id: str,
        range_header: str | None = Header(None, alias="Range"),
    ):
        try:
            record = await asyncio.to_thread(repository.get, recording_id)
            return await asyncio.to_thread(build_stream_response, store, record, range_header)
        except InvalidRecordingIdError as exc:
            raise HTTPException(status_code=400, detail="Invalid recording ID") from exc
        except RecordingNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        except MediaFileNotFoundError as exc:
            logger.warning("Recording %s has no stored file", recording_id)
            raise HTTPException(status_code=404, detail="Recording file not found") from exc
        except MalformedRangeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RangeNotSatisfiableError as exc:
            return JSONResponse(
                {"detail": str(exc)},
                status_code=416,
                headers={"Content-Range": exc.content_range},
            )
        except StorageError as exc:
            logger.exception("Failed to stream recording %s", recording_id)
            system_log.record(
                "storage",
                "stream_failed",
                "Failed to stream recording.",
                metadata={"id": recording_id, "error": str(exc)},
            )
            raise HTTPException(status_code=500, detail="Failed to stream recording") from exc

    @app.delete("/recordings/{recording_id}", response_model=MessageResponse)
    async def delete_recording(recording_id: str) -> MessageResponse:
        try:
            record = await asyncio.to_thread(repository.delete, recording_id)
        except InvalidRecordingIdError as exc:
            raise HTTPException(status_code=400, detail="Invalid recording ID") from exc
        except RecordingNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        except (RecordingDeletionError, StorageError) as exc:
            logger.exception("Failed to delete recording %s", recording_id)
            system_log.record(
                "storage",
                "delete_failed",
                "Failed to delete recording.",
                metadata={"id": recording_id, "error": str(exc)},
            )
            raise HTTPException(status_code=500, detail="Failed to delete recording") from exc
        system_log.record(
            "recordings",
            "deleted",
            f"Recording '{record.title}' deleted.",
            metadata={"id": record.id},
        )
        return MessageResponse(message="Recording deleted successfully")

    return app


__all__ = ["create_app", "generate_filename"]
