"""Live encoders turning capture tracks into timed container fragments."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from fractions import Fraction
from typing import Callable

import av
import numpy as np

from .sources import AUDIO_SAMPLE_RATE, CaptureError, MediaStream, MediaTrack
from .video_encoding import EncoderProfile

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[bytes], None]
ErrorCallback = Callable[[BaseException], None]

_DEFAULT_AUDIO_FRAME_SIZE = 1024


class EncoderError(RuntimeError):
    """Raised when the encoder cannot produce media."""


class MediaEncoder(ABC):
    """Turns a live :class:`MediaStream` into container fragments.

    Fragments are delivered through ``on_fragment`` roughly every
    ``timeslice`` seconds while running; :meth:`stop` delivers the final
    fragment before returning. Errors after :meth:`start` are reported through
    ``on_error`` instead of being raised.
    """

    @abstractmethod
    async def start(
        self,
        stream: MediaStream,
        *,
        on_fragment: FragmentCallback,
        on_error: ErrorCallback,
        timeslice: float = 1.0,
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def abort(self) -> None:
        """Stop without delivering further fragments."""

        return None


class _FragmentSink:
    """Write-only, non-seekable buffer the muxer streams into."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.total_bytes = 0

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        self.total_bytes += len(data)
        return len(data)

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class PyAVEncoder(MediaEncoder):
    """Encodes frames and audio blocks into a live WebM stream with PyAV."""

    def __init__(
        self,
        profile: EncoderProfile,
        *,
        fps: int = 15,
        video_bit_rate: int = 2_500_000,
        audio_bit_rate: int = 128_000,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self.profile = profile
        self.fps = int(fps)
        self.video_bit_rate = int(video_bit_rate)
        self.audio_bit_rate = int(audio_bit_rate)
        self._sink = _FragmentSink()
        self._container = None
        self._video_stream = None
        self._audio_stream = None
        self._resampler = None
        self._fifo = None
        self._audio_frame_size = _DEFAULT_AUDIO_FRAME_SIZE
        self._audio_samples = 0
        self._last_video_pts = -1
        self._video_track: MediaTrack | None = None
        self._audio_track: MediaTrack | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._on_fragment: FragmentCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._timeslice = 1.0
        self._started_at = 0.0
        self._running = False
        self._failed = False

    async def start(
        self,
        stream: MediaStream,
        *,
        on_fragment: FragmentCallback,
        on_error: ErrorCallback,
        timeslice: float = 1.0,
    ) -> None:
        if self._running:
            raise EncoderError("Encoder already started")
        videos = stream.video_tracks()
        if not videos:
            raise EncoderError("Stream has no video track to encode")
        audios = stream.audio_tracks()
        self._video_track = videos[0]
        self._audio_track = audios[0] if audios else None
        self._on_fragment = on_fragment
        self._on_error = on_error
        self._timeslice = float(timeslice)
        self._started_at = time.perf_counter()
        self._running = True
        self._tasks = [asyncio.create_task(self._pump_video(), name="encoder-video")]
        if self._audio_track is not None:
            self._tasks.append(asyncio.create_task(self._pump_audio(), name="encoder-audio"))
        self._tasks.append(asyncio.create_task(self._flush_periodically(), name="encoder-flush"))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await self._cancel_tasks()
        try:
            self._finish_container()
        except Exception as exc:
            self._report_error(exc)
            return
        self._emit(self._sink.drain())

    async def abort(self) -> None:
        self._running = False
        await self._cancel_tasks()
        container = self._container
        self._container = None
        if container is not None:
            with contextlib.suppress(Exception):
                container.close()
        self._sink.drain()

    # ----------------------------- implementation --------------------------
    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks = []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _emit(self, payload: bytes) -> None:
        if self._on_fragment is not None:
            self._on_fragment(payload)

    def _report_error(self, exc: BaseException) -> None:
        if self._failed:
            return
        self._failed = True
        self._running = False
        logger.error("Encoder failure: %s", exc)
        if self._on_error is not None:
            self._on_error(exc)

    async def _flush_periodically(self) -> None:
        while self._running:
            await asyncio.sleep(self._timeslice)
            if not self._running:
                break
            self._emit(self._sink.drain())

    async def _pump_video(self) -> None:
        track = self._video_track
        assert track is not None
        frame_index = 0
        try:
            while self._running:
                deadline = self._started_at + frame_index / self.fps
                delay = deadline - time.perf_counter()
                if delay > 0:
                    await asyncio.sleep(delay)
                try:
                    array = await track.read()
                except CaptureError:
                    if track.ended:
                        return
                    raise
                self._encode_video(array)
                frame_index += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report_error(exc)

    async def _pump_audio(self) -> None:
        track = self._audio_track
        assert track is not None
        try:
            while self._running:
                try:
                    block = await track.read()
                except CaptureError:
                    if track.ended:
                        return
                    raise
                self._encode_audio(block)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report_error(exc)

    def _open_container(self, width: int, height: int) -> None:
        self._container = av.open(
            self._sink,
            mode="w",
            format=self.profile.container,
            options={"live": "1", "cluster_time_limit": str(int(self._timeslice * 1000))},
        )
        video = self._container.add_stream(self.profile.video_codec, rate=self.fps)
        video.width = width
        video.height = height
        video.pix_fmt = "yuv420p"
        video.bit_rate = self.video_bit_rate
        video.options = {"deadline": "realtime", "cpu-used": "8"}
        self._video_stream = video
        if self._audio_track is not None:
            audio = self._container.add_stream(self.profile.audio_codec, rate=AUDIO_SAMPLE_RATE)
            audio.codec_context.layout = "mono"
            audio.codec_context.time_base = Fraction(1, AUDIO_SAMPLE_RATE)
            audio.bit_rate = self.audio_bit_rate
            # frame_size is only known once the codec is open
            audio.codec_context.open(strict=False)
            self._audio_stream = audio
            self._resampler = av.AudioResampler(
                format=audio.codec_context.format.name,
                layout="mono",
                rate=AUDIO_SAMPLE_RATE,
            )
            self._fifo = av.AudioFifo()
            self._audio_frame_size = audio.codec_context.frame_size or _DEFAULT_AUDIO_FRAME_SIZE

    def _encode_video(self, array: np.ndarray) -> None:
        height, width = array.shape[:2]
        # yuv420p needs even dimensions
        even = array[: height - height % 2, : width - width % 2]
        if self._container is None:
            self._open_container(even.shape[1], even.shape[0])
        elapsed = time.perf_counter() - self._started_at
        pts = max(self._last_video_pts + 1, int(round(elapsed * self.fps)))
        self._last_video_pts = pts
        frame = av.VideoFrame.from_ndarray(np.ascontiguousarray(even), format="rgb24")
        frame.pts = pts
        frame.time_base = Fraction(1, self.fps)
        for packet in self._video_stream.encode(frame):
            self._container.mux(packet)

    def _encode_audio(self, block: np.ndarray) -> None:
        if self._container is None or self._audio_stream is None:
            return
        samples = np.ascontiguousarray(np.asarray(block, dtype=np.int16).reshape(1, -1))
        frame = av.AudioFrame.from_ndarray(samples, format="s16", layout="mono")
        frame.sample_rate = AUDIO_SAMPLE_RATE
        for resampled in self._resampler.resample(frame):
            resampled.pts = None
            self._fifo.write(resampled)
        self._drain_audio_fifo(final=False)

    def _drain_audio_fifo(self, *, final: bool) -> None:
        if self._fifo is None:
            return
        while self._fifo.samples >= self._audio_frame_size or (final and self._fifo.samples):
            size = min(self._audio_frame_size, self._fifo.samples)
            chunk = self._fifo.read(size)
            if chunk is None:
                break
            chunk.pts = self._audio_samples
            chunk.time_base = Fraction(1, AUDIO_SAMPLE_RATE)
            self._audio_samples += chunk.samples
            for packet in self._audio_stream.encode(chunk):
                self._container.mux(packet)

    def _finish_container(self) -> None:
        container = self._container
        if container is None:
            return
        try:
            if self._audio_stream is not None:
                self._drain_audio_fifo(final=True)
                for packet in self._audio_stream.encode(None):
                    container.mux(packet)
            for packet in self._video_stream.encode(None):
                container.mux(packet)
        finally:
            self._container = None
            container.close()


__all__ = [
    "EncoderError",
    "ErrorCallback",
    "FragmentCallback",
    "MediaEncoder",
    "PyAVEncoder",
]
