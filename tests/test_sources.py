from __future__ import annotations

import asyncio

import numpy as np
import pytest

from screen_vault.sources import (
    AUDIO_BLOCK_SAMPLES,
    CaptureError,
    MediaStream,
    PermissionDeniedError,
    SyntheticAudioTrack,
    SyntheticMediaDevices,
    SyntheticVideoTrack,
    UnsupportedEnvironmentError,
    create_media_devices,
)


def test_synthetic_display_stream() -> None:
    devices = SyntheticMediaDevices(resolution=(64, 48))

    stream = asyncio.run(devices.get_display_media())

    [video] = stream.video_tracks()
    [audio] = stream.audio_tracks()
    frame = asyncio.run(video.read())
    block = asyncio.run(audio.read())
    assert frame.shape == (48, 64, 3)
    assert frame.dtype == np.uint8
    assert block.shape == (AUDIO_BLOCK_SAMPLES,)
    assert block.dtype == np.int16
    assert devices.display_requests == 1


def test_display_without_audio() -> None:
    devices = SyntheticMediaDevices(display_audio=False)
    stream = asyncio.run(devices.get_display_media())
    assert stream.audio_tracks() == []
    stream = asyncio.run(SyntheticMediaDevices().get_display_media(audio=False))
    assert stream.audio_tracks() == []


def test_scripted_failures() -> None:
    devices = SyntheticMediaDevices(microphone_error=PermissionDeniedError("denied"))
    with pytest.raises(PermissionDeniedError) as excinfo:
        asyncio.run(devices.get_user_media())
    assert excinfo.value.reason == "permission_denied"
    assert devices.microphone_requests == 1


def test_end_notifies_but_stop_does_not() -> None:
    ended: list[str] = []
    video = SyntheticVideoTrack(8, 8, end_after_frames=2)
    video.add_ended_callback(lambda track: ended.append(track.label))

    asyncio.run(video.read())
    asyncio.run(video.read())

    assert ended == ["synthetic-display"]
    with pytest.raises(CaptureError):
        asyncio.run(video.read())

    audio = SyntheticAudioTrack("mic")
    audio.add_ended_callback(lambda track: ended.append(track.label))
    MediaStream([audio]).stop()
    audio.end()
    assert audio.stopped and audio.ended
    assert ended == ["synthetic-display"]


def test_audio_blocks_are_continuous() -> None:
    track = SyntheticAudioTrack("tone", frequency=1000.0, amplitude=1000)
    first = asyncio.run(track.read())
    second = asyncio.run(track.read())
    joined = np.concatenate([first, second]).astype(np.int32)
    assert np.abs(np.diff(joined)).max() < 200


def test_create_media_devices(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(create_media_devices("synthetic"), SyntheticMediaDevices)
    monkeypatch.setenv("SCREEN_VAULT_CAPTURE", " Synthetic ")
    assert isinstance(create_media_devices(), SyntheticMediaDevices)
    with pytest.raises(UnsupportedEnvironmentError):
        create_media_devices("webcam")
