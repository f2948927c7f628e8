"""Capture source abstractions."""
from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterable

import numpy as np

logger = logging.getLogger(__name__)

AUDIO_SAMPLE_RATE = 48_000
AUDIO_BLOCK_SAMPLES = 960  # 20 ms at 48 kHz

# User visible identifiers for capture backends.
CAPTURE_BACKENDS: dict[str, str] = {
    "desktop": "Desktop screen (mss) with sounddevice microphone",
    "synthetic": "Synthetic test pattern and tone",
}

DEFAULT_CAPTURE_BACKEND = "desktop"


class CaptureError(RuntimeError):
    """Raised when a capture source cannot be acquired."""

    reason = "error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class PermissionDeniedError(CaptureError):
    """The user or the operating system refused access to the source."""

    reason = "permission_denied"


class SourceNotFoundError(CaptureError):
    """No source of the requested kind is available."""

    reason = "no_source"


class UnsupportedEnvironmentError(CaptureError):
    """A required capture or encoding capability is missing."""

    reason = "unsupported"


class MediaTrack(ABC):
    """A single live video or audio source.

    Video tracks yield ``(height, width, 3)`` RGB frames, audio tracks yield
    mono ``int16`` blocks sampled at :data:`AUDIO_SAMPLE_RATE`.
    """

    def __init__(self, kind: str, label: str) -> None:
        if kind not in {"video", "audio"}:
            raise ValueError(f"Unknown track kind: {kind}")
        self.kind = kind
        self.label = label
        self._stopped = False
        self._ended = False
        self._ended_callbacks: list[Callable[[MediaTrack], None]] = []

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def ended(self) -> bool:
        return self._ended or self._stopped

    @abstractmethod
    async def read(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    def add_ended_callback(self, callback: Callable[["MediaTrack"], None]) -> None:
        self._ended_callbacks.append(callback)

    def stop(self) -> None:
        """Release the underlying device handle.

        Stopping is a local action and does not fire the ended callbacks.
        """

        if self._stopped:
            return
        self._stopped = True
        try:
            self._release()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.exception("Failed to release %s track %s", self.kind, self.label)

    def end(self) -> None:
        """Mark the track as ended by its source and notify listeners."""

        if self._ended or self._stopped:
            return
        self._ended = True
        for callback in list(self._ended_callbacks):
            try:
                callback(self)
            except Exception:  # pragma: no cover - logging only
                logger.exception("Ended callback failed for track %s", self.label)

    def _release(self) -> None:  # pragma: no cover - optional override
        return None


class MediaStream:
    """An ordered group of tracks captured together."""

    def __init__(self, tracks: Iterable[MediaTrack] = ()) -> None:
        self._tracks: list[MediaTrack] = list(tracks)

    @property
    def tracks(self) -> list[MediaTrack]:
        return list(self._tracks)

    def video_tracks(self) -> list[MediaTrack]:
        return [track for track in self._tracks if track.kind == "video"]

    def audio_tracks(self) -> list[MediaTrack]:
        return [track for track in self._tracks if track.kind == "audio"]

    def stop(self) -> None:
        for track in self._tracks:
            track.stop()


class MediaDevices(ABC):
    """Backend able to hand out display and microphone sources."""

    @property
    def supports_display_capture(self) -> bool:
        return True

    @property
    def supports_microphone(self) -> bool:
        return True

    @abstractmethod
    async def get_display_media(self, *, audio: bool = True) -> MediaStream:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    async def get_user_media(self) -> MediaStream:  # pragma: no cover - interface only
        raise NotImplementedError


class SyntheticVideoTrack(MediaTrack):
    """Generates a scrolling gradient for development and testing."""

    def __init__(
        self,
        width: int = 640,
        height: int = 360,
        *,
        fps: int | None = None,
        end_after_frames: int | None = None,
    ) -> None:
        super().__init__("video", "synthetic-display")
        self._width = int(width)
        self._height = int(height)
        self._interval = 1.0 / fps if fps else 0.0
        self._end_after = end_after_frames
        self._frames = 0
        self._start = time.perf_counter()

    async def read(self) -> np.ndarray:
        if self.ended:
            raise CaptureError("Display track has ended")
        if self._interval:
            await asyncio.sleep(self._interval)
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        frame = np.stack([red, green, blue], axis=2).astype(np.uint8)
        self._frames += 1
        if self._end_after is not None and self._frames >= self._end_after:
            self.end()
        return frame


class SyntheticAudioTrack(MediaTrack):
    """Produces a sine tone in fixed-size blocks."""

    def __init__(
        self,
        label: str,
        *,
        frequency: float = 440.0,
        amplitude: int = 8000,
        realtime: bool = False,
    ) -> None:
        super().__init__("audio", label)
        self._frequency = float(frequency)
        self._amplitude = int(amplitude)
        self._realtime = realtime
        self._position = 0

    async def read(self) -> np.ndarray:
        if self.ended:
            raise CaptureError(f"Audio track {self.label} has ended")
        if self._realtime:
            await asyncio.sleep(AUDIO_BLOCK_SAMPLES / AUDIO_SAMPLE_RATE)
        index = np.arange(self._position, self._position + AUDIO_BLOCK_SAMPLES)
        self._position += AUDIO_BLOCK_SAMPLES
        wave = np.sin(2 * math.pi * self._frequency * index / AUDIO_SAMPLE_RATE)
        return (wave * self._amplitude).astype(np.int16)


class SyntheticMediaDevices(MediaDevices):
    """In-process capture backend with scriptable failures."""

    def __init__(
        self,
        *,
        display_audio: bool = True,
        display_error: CaptureError | None = None,
        microphone_error: CaptureError | None = None,
        display_supported: bool = True,
        end_display_after_frames: int | None = None,
        resolution: tuple[int, int] = (640, 360),
        fps: int | None = None,
        realtime_audio: bool = False,
    ) -> None:
        self._display_audio = display_audio
        self._display_error = display_error
        self._microphone_error = microphone_error
        self._display_supported = display_supported
        self._end_after = end_display_after_frames
        self._resolution = resolution
        self._fps = fps
        self._realtime_audio = realtime_audio
        self.issued_tracks: list[MediaTrack] = []
        self.display_requests = 0
        self.microphone_requests = 0

    @property
    def supports_display_capture(self) -> bool:
        return self._display_supported

    async def get_display_media(self, *, audio: bool = True) -> MediaStream:
        self.display_requests += 1
        if self._display_error is not None:
            raise self._display_error
        width, height = self._resolution
        tracks: list[MediaTrack] = [
            SyntheticVideoTrack(
                width, height, fps=self._fps, end_after_frames=self._end_after
            )
        ]
        if audio and self._display_audio:
            tracks.append(
                SyntheticAudioTrack(
                    "synthetic-display-audio",
                    frequency=330.0,
                    realtime=self._realtime_audio,
                )
            )
        self.issued_tracks.extend(tracks)
        return MediaStream(tracks)

    async def get_user_media(self) -> MediaStream:
        self.microphone_requests += 1
        if self._microphone_error is not None:
            raise self._microphone_error
        track = SyntheticAudioTrack(
            "synthetic-microphone", frequency=550.0, realtime=self._realtime_audio
        )
        self.issued_tracks.append(track)
        return MediaStream([track])


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("SCREEN_VAULT_CAPTURE", DEFAULT_CAPTURE_BACKEND)
    return choice.strip().lower()


def create_media_devices(choice: str | None = None, **kwargs: object) -> MediaDevices:
    """Create the capture backend named by *choice* or the environment."""

    resolved = _normalise_choice(choice)
    if resolved == "synthetic":
        return SyntheticMediaDevices(**kwargs)  # type: ignore[arg-type]
    if resolved == "desktop":
        from .desktop import DesktopMediaDevices

        return DesktopMediaDevices(**kwargs)  # type: ignore[arg-type]
    raise UnsupportedEnvironmentError(f"Unknown capture backend: {choice}")


__all__ = [
    "AUDIO_BLOCK_SAMPLES",
    "AUDIO_SAMPLE_RATE",
    "CAPTURE_BACKENDS",
    "CaptureError",
    "DEFAULT_CAPTURE_BACKEND",
    "MediaDevices",
    "MediaStream",
    "MediaTrack",
    "PermissionDeniedError",
    "SourceNotFoundError",
    "SyntheticAudioTrack",
    "SyntheticMediaDevices",
    "SyntheticVideoTrack",
    "UnsupportedEnvironmentError",
    "create_media_devices",
]
