"""Desktop capture backend built on mss and sounddevice."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor

import mss
import numpy as np
from mss.exception import ScreenShotError

from .sources import (
    AUDIO_BLOCK_SAMPLES,
    AUDIO_SAMPLE_RATE,
    CaptureError,
    MediaDevices,
    MediaStream,
    MediaTrack,
    PermissionDeniedError,
    SourceNotFoundError,
    UnsupportedEnvironmentError,
)

logger = logging.getLogger(__name__)

_QUEUE_LIMIT = 50

# Queued by _release so a pending read() wakes up and sees the track ended.
_CLOSED = object()


class ScreenTrack(MediaTrack):
    """Grabs one monitor with mss on a dedicated worker thread.

    mss handles are thread bound, so every grab happens on the same single
    worker. A failed grab ends the track, which the session treats like the
    user stopping the share.
    """

    def __init__(self, monitor: int = 1) -> None:
        super().__init__("video", f"screen-{monitor}")
        self._monitor_index = int(monitor)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="screen-grab")
        self._sct = None
        self._monitor: dict[str, int] | None = None

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._open_blocking)

    def _open_blocking(self) -> None:
        try:
            sct = mss.mss()
        except ScreenShotError as exc:
            raise UnsupportedEnvironmentError(f"Screen capture unavailable: {exc}") from exc
        monitors = sct.monitors
        if self._monitor_index < 1 or self._monitor_index >= len(monitors):
            sct.close()
            raise SourceNotFoundError(f"Monitor {self._monitor_index} is not available")
        self._sct = sct
        self._monitor = dict(monitors[self._monitor_index])
        logger.info(
            "Capturing monitor %d (%dx%d)",
            self._monitor_index,
            self._monitor["width"],
            self._monitor["height"],
        )

    def _grab_blocking(self) -> np.ndarray:
        if self._sct is None or self._monitor is None:
            raise CaptureError("Screen track is not open")
        shot = self._sct.grab(self._monitor)
        # BGRA -> RGB
        raw = np.asarray(shot, dtype=np.uint8)
        return np.ascontiguousarray(raw[:, :, 2::-1])

    async def read(self) -> np.ndarray:
        if self.ended:
            raise CaptureError("Screen track has ended")
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self._grab_blocking)
        except ScreenShotError as exc:
            logger.warning("Screen grab failed, ending display track: %s", exc)
            self.end()
            raise CaptureError(f"Screen grab failed: {exc}") from exc

    def _release(self) -> None:
        sct = self._sct
        self._sct = None
        if sct is not None:
            self._executor.submit(sct.close)
        self._executor.shutdown(wait=False)


class MicrophoneTrack(MediaTrack):
    """Microphone blocks from a PortAudio input stream."""

    def __init__(self, device: int | str | None = None) -> None:
        super().__init__("audio", "microphone")
        self._device = device
        self._stream = None
        self._queue: asyncio.Queue[object] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def open(self) -> None:
        try:
            import sounddevice as sd
        except OSError as exc:  # pragma: no cover - PortAudio missing
            raise UnsupportedEnvironmentError(f"Audio input unavailable: {exc}") from exc

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=_QUEUE_LIMIT)
        try:
            stream = sd.InputStream(
                samplerate=AUDIO_SAMPLE_RATE,
                channels=1,
                dtype="int16",
                blocksize=AUDIO_BLOCK_SAMPLES,
                device=self._device,
                callback=self._callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            raise _map_portaudio_error(exc) from exc
        except ValueError as exc:
            raise SourceNotFoundError(f"No microphone available: {exc}") from exc
        self._stream = stream

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Microphone status: %s", status)
        block = np.array(indata[:, 0], dtype=np.int16, copy=True)
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._enqueue, block)

    def _enqueue(self, block: np.ndarray) -> None:
        queue = self._queue
        if queue is None or self.stopped:
            return
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(block)

    async def read(self) -> np.ndarray:
        if self.ended or self._queue is None:
            raise CaptureError("Microphone track has ended")
        block = await self._queue.get()
        if block is _CLOSED:
            raise CaptureError("Microphone track has ended")
        return block

    def _release(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.stop()
            stream.close()
        queue = self._queue
        if queue is not None:
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(_CLOSED)


def _map_portaudio_error(exc: Exception) -> CaptureError:
    text = str(exc).lower()
    if "permission" in text or "access" in text or "denied" in text:
        return PermissionDeniedError(f"Microphone access denied: {exc}")
    return SourceNotFoundError(f"No microphone available: {exc}")


class DesktopMediaDevices(MediaDevices):
    """Captures the local desktop; the display stream carries no audio."""

    def __init__(
        self,
        *,
        monitor: int | None = None,
        microphone_device: int | str | None = None,
    ) -> None:
        if monitor is None:
            monitor = _monitor_from_env()
        self.monitor = monitor
        self.microphone_device = microphone_device

    @property
    def supports_display_capture(self) -> bool:
        if os.name == "posix" and not _has_display_server():
            return False
        return True

    async def get_display_media(self, *, audio: bool = True) -> MediaStream:
        track = ScreenTrack(self.monitor)
        try:
            await track.open()
        except CaptureError:
            track.stop()
            raise
        if audio:
            logger.debug("Display audio loopback is not available on the desktop backend")
        return MediaStream([track])

    async def get_user_media(self) -> MediaStream:
        track = MicrophoneTrack(self.microphone_device)
        try:
            track.open()
        except CaptureError:
            track.stop()
            raise
        return MediaStream([track])


def _has_display_server() -> bool:
    if sys.platform == "darwin":
        return True
    return bool(os.getenv("DISPLAY") or os.getenv("WAYLAND_DISPLAY"))


def _monitor_from_env() -> int:
    value = os.getenv("SCREEN_VAULT_MONITOR")
    if value:
        try:
            return max(1, int(value))
        except ValueError:
            logger.warning("Invalid SCREEN_VAULT_MONITOR value %r; ignoring", value)
    return 1


__all__ = ["DesktopMediaDevices", "MicrophoneTrack", "ScreenTrack"]
