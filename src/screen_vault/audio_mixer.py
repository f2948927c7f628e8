"""Mixing of display audio and microphone narration into one track."""
from __future__ import annotations

import asyncio
import logging

import numpy as np

from .sources import CaptureError, MediaTrack

logger = logging.getLogger(__name__)

DISPLAY_AUDIO_GAIN = 0.7
MICROPHONE_GAIN = 1.0

_INT16_MIN = np.iinfo(np.int16).min
_INT16_MAX = np.iinfo(np.int16).max


def _fit_block(block: np.ndarray, length: int) -> np.ndarray:
    samples = np.asarray(block).reshape(-1)
    if samples.shape[0] == length:
        return samples
    if samples.shape[0] > length:
        return samples[:length]
    return np.pad(samples, (0, length - samples.shape[0]))


def mix_blocks(
    display: np.ndarray | None,
    microphone: np.ndarray | None,
    *,
    display_gain: float = DISPLAY_AUDIO_GAIN,
    microphone_gain: float = MICROPHONE_GAIN,
) -> np.ndarray:
    """Sum two mono ``int16`` blocks with per-branch gain and saturation.

    The output length follows the longer input; the shorter one is padded with
    silence.
    """

    if display is None and microphone is None:
        return np.zeros(0, dtype=np.int16)
    lengths = [np.asarray(b).size for b in (display, microphone) if b is not None]
    length = max(lengths)
    total = np.zeros(length, dtype=np.float64)
    if display is not None:
        total += _fit_block(display, length).astype(np.float64) * display_gain
    if microphone is not None:
        total += _fit_block(microphone, length).astype(np.float64) * microphone_gain
    return np.clip(np.rint(total), _INT16_MIN, _INT16_MAX).astype(np.int16)


class MixedAudioTrack(MediaTrack):
    """Audio track reading the mix produced by an :class:`AudioMixGraph`."""

    def __init__(self, graph: "AudioMixGraph") -> None:
        super().__init__("audio", "mixed-audio")
        self._graph = graph

    async def read(self) -> np.ndarray:
        if self.ended:
            raise CaptureError("Mixed audio track has been stopped")
        return await self._graph.pull()


class AudioMixGraph:
    """Routes display audio (attenuated) and microphone audio into one output.

    The graph does not own its input tracks; releasing them is the caller's
    job. :meth:`close` only tears down the graph itself and its output track.
    """

    def __init__(
        self,
        microphone: MediaTrack,
        display: MediaTrack | None = None,
        *,
        display_gain: float = DISPLAY_AUDIO_GAIN,
        microphone_gain: float = MICROPHONE_GAIN,
    ) -> None:
        if microphone.kind != "audio":
            raise ValueError("Microphone branch requires an audio track")
        if display is not None and display.kind != "audio":
            raise ValueError("Display branch requires an audio track")
        self._microphone = microphone
        self._display = display
        self.display_gain = float(display_gain)
        self.microphone_gain = float(microphone_gain)
        self._closed = False
        self.close_count = 0
        self.output = MixedAudioTrack(self)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_display_branch(self) -> bool:
        return self._display is not None

    async def pull(self) -> np.ndarray:
        if self._closed:
            raise CaptureError("Audio graph is closed")
        if self._display is None:
            microphone = await self._microphone.read()
            return mix_blocks(None, microphone, microphone_gain=self.microphone_gain)
        display, microphone = await asyncio.gather(
            self._display.read(), self._microphone.read()
        )
        return mix_blocks(
            display,
            microphone,
            display_gain=self.display_gain,
            microphone_gain=self.microphone_gain,
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_count += 1
        self.output.stop()
        logger.debug("Audio mix graph closed")


__all__ = [
    "AudioMixGraph",
    "DISPLAY_AUDIO_GAIN",
    "MICROPHONE_GAIN",
    "MixedAudioTrack",
    "mix_blocks",
]
