from __future__ import annotations

import asyncio

import numpy as np
import pytest

from screen_vault.audio_mixer import (
    DISPLAY_AUDIO_GAIN,
    MICROPHONE_GAIN,
    AudioMixGraph,
    MixedAudioTrack,
    mix_blocks,
)
from screen_vault.sources import CaptureError, MediaTrack, SyntheticAudioTrack, SyntheticVideoTrack


class _ConstantTrack(MediaTrack):
    def __init__(self, value: int, length: int = 4) -> None:
        super().__init__("audio", f"constant-{value}")
        self._block = np.full(length, value, dtype=np.int16)

    async def read(self) -> np.ndarray:
        return self._block.copy()


def test_default_gains() -> None:
    assert DISPLAY_AUDIO_GAIN == pytest.approx(0.7)
    assert MICROPHONE_GAIN == pytest.approx(1.0)


def test_mix_blocks_applies_gains() -> None:
    display = np.array([1000, -1000, 0], dtype=np.int16)
    microphone = np.array([100, 200, 300], dtype=np.int16)
    mixed = mix_blocks(display, microphone)
    assert mixed.dtype == np.int16
    assert mixed.tolist() == [800, -500, 300]


def test_mix_blocks_saturates() -> None:
    loud = np.array([32000, -32000], dtype=np.int16)
    mixed = mix_blocks(loud, loud)
    assert mixed.tolist() == [32767, -32768]


def test_mix_blocks_pads_shorter_input() -> None:
    mixed = mix_blocks(np.array([10, 10], dtype=np.int16), np.array([1, 1, 1, 1], dtype=np.int16))
    assert mixed.tolist() == [8, 8, 1, 1]
    assert mix_blocks(None, None).size == 0


def test_graph_mixes_both_branches() -> None:
    graph = AudioMixGraph(_ConstantTrack(100), _ConstantTrack(1000))
    assert graph.has_display_branch
    assert isinstance(graph.output, MixedAudioTrack)
    block = asyncio.run(graph.output.read())
    assert block.tolist() == [800] * 4


def test_graph_without_display_branch_passes_microphone() -> None:
    graph = AudioMixGraph(_ConstantTrack(250))
    assert not graph.has_display_branch
    assert asyncio.run(graph.pull()).tolist() == [250] * 4


def test_graph_close_is_idempotent() -> None:
    microphone = SyntheticAudioTrack("mic")
    graph = AudioMixGraph(microphone)
    graph.close()
    graph.close()
    assert graph.closed
    assert graph.close_count == 1
    assert graph.output.stopped
    # inputs are owned by the caller
    assert not microphone.stopped
    with pytest.raises(CaptureError):
        asyncio.run(graph.output.read())


def test_graph_rejects_video_inputs() -> None:
    with pytest.raises(ValueError):
        AudioMixGraph(SyntheticVideoTrack(4, 4))
    with pytest.raises(ValueError):
        AudioMixGraph(SyntheticAudioTrack("mic"), SyntheticVideoTrack(4, 4))
