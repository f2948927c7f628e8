from __future__ import annotations

import pytest

from screen_vault.video_encoding import (
    get_encoder_profile,
    list_encoder_profiles,
    select_encoder_profile,
)


class _CodecCheck:
    def __init__(self, unsupported: set[str] | None = None) -> None:
        self.unsupported = unsupported or set()
        self.calls: list[str] = []

    def __call__(self, codec: str) -> bool:
        self.calls.append(codec)
        return codec not in self.unsupported


def test_profiles_are_in_preference_order() -> None:
    mime_types = [profile.mime_type for profile in list_encoder_profiles()]
    assert mime_types == [
        "video/webm;codecs=vp9,opus",
        "video/webm;codecs=vp8,opus",
        "video/webm",
    ]


def test_first_fully_supported_profile_wins() -> None:
    check = _CodecCheck()
    profile, attempted = select_encoder_profile(check)
    assert profile is not None
    assert profile.key == "vp9-opus"
    assert attempted == ("libvpx-vp9", "libopus")


def test_falls_back_to_vp8_when_vp9_missing() -> None:
    check = _CodecCheck({"libvpx-vp9"})
    profile, attempted = select_encoder_profile(check)
    assert profile is not None
    assert profile.mime_type == "video/webm;codecs=vp8,opus"
    assert attempted == ("libvpx-vp9", "libvpx", "libopus")


def test_falls_back_to_baseline_and_checks_each_codec_once() -> None:
    check = _CodecCheck({"libopus"})
    profile, attempted = select_encoder_profile(check)
    assert profile is not None
    assert profile.key == "webm"
    assert attempted == ("libvpx-vp9", "libopus", "libvpx", "libvorbis")
    assert check.calls == list(attempted)


def test_no_supported_profile() -> None:
    check = _CodecCheck({"libvpx-vp9", "libvpx"})
    profile, attempted = select_encoder_profile(check)
    assert profile is None
    assert attempted == ("libvpx-vp9", "libvpx")


def test_get_encoder_profile() -> None:
    assert get_encoder_profile("vp8-opus").video_codec == "libvpx"
    assert get_encoder_profile("webm").extension == ".webm"
    with pytest.raises(ValueError):
        get_encoder_profile("h264")
