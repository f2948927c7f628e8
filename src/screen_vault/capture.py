"""Screen capture sessions with optional microphone narration.

A :class:`CaptureSession` acquires a display source (and, when enabled, a
microphone), mixes their audio, drives a :class:`~screen_vault.encoder.MediaEncoder`
and collects its fragments into an :class:`~screen_vault.assembly.AssembledRecording`.

State machine::

    IDLE -> REQUESTING_PERMISSIONS -> RECORDING -> STOPPING -> STOPPED
      \\______________ any non-terminal state ______________/-> FAILED

Every exit path (user stop, duration cap, display ended externally, encoder
error, teardown) releases the acquired tracks and the audio graph exactly once.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .assembly import AssembledRecording, EmptyCaptureError, EncodedFragment, MediaAssembler
from .audio_mixer import AudioMixGraph
from .encoder import MediaEncoder
from .sources import (
    CaptureError,
    MediaDevices,
    MediaStream,
    MediaTrack,
    PermissionDeniedError,
    SourceNotFoundError,
    UnsupportedEnvironmentError,
)
from .video_encoding import EncoderProfile, codec_available, select_encoder_profile

logger = logging.getLogger(__name__)

MAX_RECORDING_SECONDS = 180
LIMIT_WARNING_SECONDS = 150

MICROPHONE_DENIED_WARNING = "Microphone access denied. Recording system audio only."
MICROPHONE_UNAVAILABLE_WARNING = "No microphone available. Recording system audio only."
RECORDING_FAILED_MESSAGE = "Recording failed. Please try again."


class CaptureState(str, Enum):
    IDLE = "idle"
    REQUESTING_PERMISSIONS = "requesting_permissions"
    RECORDING = "recording"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({CaptureState.STOPPED, CaptureState.FAILED})


class EncoderFailureError(RuntimeError):
    """The encoder failed mid-recording; the session is over but may be retried."""

    retryable = True

    def __init__(self, message: str = RECORDING_FAILED_MESSAGE) -> None:
        super().__init__(message)


def describe_capture_error(exc: BaseException) -> str:
    """Return a user facing message for a failed display request."""

    prefix = "Failed to start recording. "
    if isinstance(exc, PermissionDeniedError):
        return prefix + "Please grant screen sharing permissions."
    if isinstance(exc, SourceNotFoundError):
        return prefix + "No screen sharing source available."
    if isinstance(exc, UnsupportedEnvironmentError):
        return prefix + "Screen recording is not supported in this environment."
    detail = str(exc).strip()
    return prefix + (detail or "Unknown error.")


@dataclass(frozen=True, slots=True)
class CaptureOptions:
    """Tunable limits for a capture session."""

    microphone_enabled: bool = True
    max_duration_seconds: int = MAX_RECORDING_SECONDS
    warning_threshold_seconds: int = LIMIT_WARNING_SECONDS
    timeslice_seconds: float = 1.0
    tick_interval: float | None = 1.0

    def __post_init__(self) -> None:
        if not (1 <= int(self.max_duration_seconds) <= MAX_RECORDING_SECONDS):
            raise ValueError(
                f"Maximum duration must be between 1 and {MAX_RECORDING_SECONDS} seconds"
            )
        if self.warning_threshold_seconds < 0:
            raise ValueError("Warning threshold must not be negative")
        if not (0 < self.timeslice_seconds <= 1.0):
            raise ValueError("Fragment timeslice must be within (0, 1] seconds")
        if self.tick_interval is not None and self.tick_interval <= 0:
            raise ValueError("Tick interval must be positive")


class CaptureSession:
    """Single screen recording from permission request to assembled file."""

    def __init__(
        self,
        devices: MediaDevices,
        encoder_factory: Callable[[EncoderProfile], MediaEncoder],
        options: CaptureOptions | None = None,
        *,
        codec_check: Callable[[str], bool] = codec_available,
        on_state_change: Callable[[CaptureState], None] | None = None,
        on_tick: Callable[[int], None] | None = None,
        on_limit_approaching: Callable[[int], None] | None = None,
        on_warning: Callable[[str], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        on_complete: Callable[[AssembledRecording], None] | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self._devices = devices
        self._encoder_factory = encoder_factory
        self.options = options or CaptureOptions()
        self._codec_check = codec_check
        self._on_state_change = on_state_change
        self._on_tick = on_tick
        self._on_limit_approaching = on_limit_approaching
        self._on_warning = on_warning
        self._on_error = on_error
        self._on_complete = on_complete

        self._state = CaptureState.IDLE
        self._elapsed = 0
        self._limit_warned = False
        self._profile: EncoderProfile | None = None
        self._encoder: MediaEncoder | None = None
        self._assembler = MediaAssembler()
        self._next_sequence = 0
        self._tracks: list[MediaTrack] = []
        self._graph: AudioMixGraph | None = None
        self._display_audio = False
        self._microphone_active = False
        self._released = False
        self._timer_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[AssembledRecording | None] | None = None
        self._abort_task: asyncio.Task[None] | None = None
        self._result: AssembledRecording | None = None
        self.error: BaseException | None = None
        self.error_message: str | None = None
        self.warnings: list[str] = []

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed

    @property
    def profile(self) -> EncoderProfile | None:
        return self._profile

    @property
    def content_type(self) -> str | None:
        return self._profile.mime_type if self._profile is not None else None

    @property
    def display_audio(self) -> bool:
        return self._display_audio

    @property
    def microphone_active(self) -> bool:
        return self._microphone_active

    @property
    def result(self) -> AssembledRecording | None:
        return self._result

    @property
    def resources_released(self) -> bool:
        return self._released

    # ------------------------------ operations -----------------------------
    async def start(self) -> None:
        if self._state is not CaptureState.IDLE:
            raise RuntimeError("Capture session has already been started")

        if not self._devices.supports_display_capture:
            self._fail_before_capture(
                UnsupportedEnvironmentError("Screen capture is not available")
            )
        profile, attempted = select_encoder_profile(self._codec_check)
        if profile is None:
            self._fail_before_capture(
                UnsupportedEnvironmentError(
                    "No supported encoder found (tried %s)" % ", ".join(attempted)
                )
            )
        self._profile = profile

        self._set_state(CaptureState.REQUESTING_PERMISSIONS)
        try:
            display = await self._devices.get_display_media(audio=True)
        except CaptureError as exc:
            self._fail(exc, describe_capture_error(exc))
            raise
        except Exception as exc:
            failure = CaptureError(f"Display capture failed: {exc}")
            self._fail(failure, describe_capture_error(failure))
            raise failure from exc
        self._tracks.extend(display.tracks)
        videos = display.video_tracks()
        if not videos:
            exc = SourceNotFoundError("Display source has no video track")
            self._fail(exc, describe_capture_error(exc))
            raise exc
        display_audio = display.audio_tracks()
        self._display_audio = bool(display_audio)

        microphone: MediaTrack | None = None
        if self.options.microphone_enabled:
            microphone = await self._request_microphone()

        try:
            stream = self._build_stream(videos[0], display_audio[0] if display_audio else None, microphone)
            self._encoder = self._encoder_factory(profile)
            await self._encoder.start(
                stream,
                on_fragment=self._handle_fragment,
                on_error=self._handle_encoder_error,
                timeslice=self.options.timeslice_seconds,
            )
        except Exception as exc:
            failure = EncoderFailureError()
            failure.__cause__ = exc
            self._fail(failure, RECORDING_FAILED_MESSAGE)
            await self._await_abort()
            raise failure from exc

        videos[0].add_ended_callback(self._handle_display_ended)
        self._set_state(CaptureState.RECORDING)
        logger.info(
            "Capture %s recording (%s, display audio=%s, microphone=%s)",
            self.id,
            profile.mime_type,
            self._display_audio,
            self._microphone_active,
        )
        if self.options.tick_interval is not None:
            self._timer_task = asyncio.create_task(self._run_timer(self.options.tick_interval))

    def tick(self) -> None:
        """Advance the elapsed time by one second."""

        if self._state is not CaptureState.RECORDING:
            return
        self._elapsed += 1
        if self._on_tick is not None:
            self._on_tick(self._elapsed)
        if (
            not self._limit_warned
            and self._elapsed >= self.options.warning_threshold_seconds
        ):
            self._limit_warned = True
            if self._on_limit_approaching is not None:
                self._on_limit_approaching(self._elapsed)
        if self._elapsed >= self.options.max_duration_seconds:
            logger.info("Capture %s reached the %ds limit", self.id, self._elapsed)
            self._schedule_stop()

    async def stop(self) -> AssembledRecording | None:
        """Finish the recording.

        Only the first call performs the stop; later or concurrent calls wait
        for it and return the same recording (``None`` if there was nothing
        to stop or the capture was empty).
        """

        if self._stop_task is None:
            if self._state is not CaptureState.RECORDING:
                await self._await_abort()
                return self._result
            self._begin_stop()
        assert self._stop_task is not None
        return await asyncio.shield(self._stop_task)

    async def wait_stopped(self) -> AssembledRecording | None:
        if self._stop_task is None:
            await self._await_abort()
            return self._result
        return await asyncio.shield(self._stop_task)

    async def aclose(self) -> None:
        if self._state is CaptureState.RECORDING or self._stop_task is not None:
            await self.stop()
            return
        self._cancel_timer()
        if self._state is not CaptureState.STOPPED:
            self._schedule_abort()
        await self._await_abort()
        self._release_resources()

    async def __aenter__(self) -> "CaptureSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ----------------------------- implementation --------------------------
    def _set_state(self, state: CaptureState) -> None:
        if self._state is state:
            return
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning("Capture %s: %s", self.id, message)
        if self._on_warning is not None:
            self._on_warning(message)

    def _report_error(self, exc: BaseException, message: str) -> None:
        self.error = exc
        self.error_message = message
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:  # pragma: no cover - logging only
                logger.exception("Capture error callback failed")

    def _fail_before_capture(self, exc: UnsupportedEnvironmentError) -> None:
        self._fail(exc, describe_capture_error(exc))
        raise exc

    def _fail(self, exc: BaseException, message: str) -> None:
        if self._state in _TERMINAL_STATES:
            return
        logger.error("Capture %s failed: %s (%s)", self.id, message, exc)
        self._cancel_timer()
        self._release_resources()
        self._set_state(CaptureState.FAILED)
        self._report_error(exc, message)
        self._schedule_abort()

    async def _request_microphone(self) -> MediaTrack | None:
        if not self._devices.supports_microphone:
            self._warn(MICROPHONE_UNAVAILABLE_WARNING)
            return None
        try:
            stream = await self._devices.get_user_media()
        except PermissionDeniedError:
            self._warn(MICROPHONE_DENIED_WARNING)
            return None
        except CaptureError as exc:
            logger.debug("Microphone request failed: %s", exc)
            self._warn(MICROPHONE_UNAVAILABLE_WARNING)
            return None
        except Exception:
            logger.exception("Microphone backend raised unexpectedly")
            self._warn(MICROPHONE_UNAVAILABLE_WARNING)
            return None
        self._tracks.extend(stream.tracks)
        tracks = stream.audio_tracks()
        if not tracks:
            self._warn(MICROPHONE_UNAVAILABLE_WARNING)
            return None
        self._microphone_active = True
        return tracks[0]

    def _build_stream(
        self,
        video: MediaTrack,
        display_audio: MediaTrack | None,
        microphone: MediaTrack | None,
    ) -> MediaStream:
        if microphone is None:
            tracks = [video] if display_audio is None else [video, display_audio]
            return MediaStream(tracks)
        self._graph = AudioMixGraph(microphone, display_audio)
        return MediaStream([video, self._graph.output])

    def _handle_fragment(self, payload: bytes) -> None:
        if self._state not in {CaptureState.RECORDING, CaptureState.STOPPING}:
            logger.debug("Ignoring fragment delivered in state %s", self._state.value)
            return
        fragment = EncodedFragment(payload=bytes(payload), sequence=self._next_sequence)
        self._next_sequence += 1
        self._assembler.append(fragment)

    def _handle_encoder_error(self, exc: BaseException) -> None:
        if self._state in _TERMINAL_STATES:
            return
        failure = EncoderFailureError()
        failure.__cause__ = exc
        self._fail(failure, RECORDING_FAILED_MESSAGE)

    def _handle_display_ended(self, track: MediaTrack) -> None:
        logger.info("Capture %s display source ended externally", self.id)
        self._schedule_stop()

    def _schedule_stop(self) -> None:
        if self._stop_task is not None or self._state is not CaptureState.RECORDING:
            return
        self._begin_stop()
        assert self._stop_task is not None
        self._stop_task.add_done_callback(_consume_task_result)

    def _begin_stop(self) -> None:
        self._set_state(CaptureState.STOPPING)
        self._cancel_timer()
        self._stop_task = asyncio.get_running_loop().create_task(self._finish())

    async def _finish(self) -> AssembledRecording | None:
        encoder = self._encoder
        try:
            if encoder is not None:
                await encoder.stop()
        except Exception as exc:
            logger.exception("Encoder failed while stopping capture %s", self.id)
            self._handle_encoder_error(exc)
        if self._state is CaptureState.FAILED:
            await self._await_abort()
            return None
        self._release_resources()
        assert self._profile is not None
        try:
            recording = self._assembler.finalize(self._profile.mime_type, self._elapsed)
        except EmptyCaptureError as exc:
            self._set_state(CaptureState.STOPPED)
            self._report_error(exc, str(exc))
            logger.warning("Capture %s produced no data", self.id)
            return None
        self._result = recording
        self._set_state(CaptureState.STOPPED)
        logger.info(
            "Capture %s stopped after %ds (%d bytes in %d fragments)",
            self.id,
            recording.duration_seconds,
            recording.size,
            self._assembler.fragment_count,
        )
        if self._on_complete is not None:
            self._on_complete(recording)
        return recording

    def _release_resources(self) -> None:
        if self._released:
            return
        self._released = True
        for track in self._tracks:
            track.stop()
        if self._graph is not None:
            self._graph.close()

    def _schedule_abort(self) -> None:
        """Tear the encoder down after a failure; runs at most once."""

        if self._encoder is None or self._abort_task is not None:
            return
        self._abort_task = asyncio.get_running_loop().create_task(self._encoder.abort())
        self._abort_task.add_done_callback(_consume_task_result)

    async def _await_abort(self) -> None:
        task = self._abort_task
        if task is None or task is asyncio.current_task():
            return
        await asyncio.shield(task)

    async def _run_timer(self, interval: float) -> None:
        while self._state is CaptureState.RECORDING:
            await asyncio.sleep(interval)
            self.tick()

    def _cancel_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()


def _consume_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:  # pragma: no cover - logging only
        logger.error("Automatic capture stop failed", exc_info=exc)


__all__ = [
    "CaptureOptions",
    "CaptureSession",
    "CaptureState",
    "EncoderFailureError",
    "LIMIT_WARNING_SECONDS",
    "MAX_RECORDING_SECONDS",
    "MICROPHONE_DENIED_WARNING",
    "describe_capture_error",
]
