"""Encoder profile discovery for screen recordings."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Iterable

import av


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncoderProfile:
    """A container plus video/audio codec pair the recorder can produce."""

    key: str
    mime_type: str
    container: str
    video_codec: str
    audio_codec: str
    label: str

    @property
    def codecs(self) -> tuple[str, str]:
        return (self.video_codec, self.audio_codec)

    @property
    def extension(self) -> str:
        return f".{self.container}"


_ENCODER_PROFILES: tuple[EncoderProfile, ...] = (
    EncoderProfile(
        key="vp9-opus",
        mime_type="video/webm;codecs=vp9,opus",
        container="webm",
        video_codec="libvpx-vp9",
        audio_codec="libopus",
        label="WebM VP9 + Opus",
    ),
    EncoderProfile(
        key="vp8-opus",
        mime_type="video/webm;codecs=vp8,opus",
        container="webm",
        video_codec="libvpx",
        audio_codec="libopus",
        label="WebM VP8 + Opus",
    ),
    EncoderProfile(
        key="webm",
        mime_type="video/webm",
        container="webm",
        video_codec="libvpx",
        audio_codec="libvorbis",
        label="WebM baseline (VP8 + Vorbis)",
    ),
)

_PROFILES_BY_KEY = {profile.key: profile for profile in _ENCODER_PROFILES}


def list_encoder_profiles() -> tuple[EncoderProfile, ...]:
    """Return the encoder profiles in preference order."""

    return _ENCODER_PROFILES


def get_encoder_profile(key: str) -> EncoderProfile:
    try:
        return _PROFILES_BY_KEY[key]
    except KeyError:
        raise ValueError(f"Unknown encoder profile: {key}") from None


def codec_available(codec: str) -> bool:
    """Return ``True`` when PyAV can open *codec* as an encoder."""

    try:
        context = av.CodecContext.create(codec, "w")
    except av.FFmpegError as exc:  # pragma: no cover - codec missing from the build
        logger.debug("Codec %s unavailable: %s", codec, exc)
        return False
    except Exception as exc:  # pragma: no cover
        logger.debug("Failed to initialise codec %s: %s", codec, exc)
        return False
    if not getattr(context, "is_encoder", True):
        logger.debug("Codec %s is not an encoder", codec)
        return False
    return True


def select_encoder_profile(
    codec_check: Callable[[str], bool] = codec_available,
    profiles: Iterable[EncoderProfile] | None = None,
) -> tuple[EncoderProfile | None, tuple[str, ...]]:
    """Pick the first profile whose codecs are all supported.

    Returns ``(profile, attempted_codecs)``. ``profile`` is ``None`` when no
    candidate is usable. Each codec is checked at most once, in preference
    order, so the outcome is deterministic for a given runtime.
    """

    candidates = _ENCODER_PROFILES if profiles is None else tuple(profiles)
    attempted: list[str] = []
    results: dict[str, bool] = {}
    for profile in candidates:
        usable = True
        for codec in profile.codecs:
            if codec not in results:
                attempted.append(codec)
                results[codec] = bool(codec_check(codec))
            if not results[codec]:
                usable = False
                break
        if usable:
            logger.info("Selected encoder profile %s (%s)", profile.key, profile.mime_type)
            return profile, tuple(attempted)
    logger.warning("No usable encoder profile; tried %s", ", ".join(attempted) or "nothing")
    return None, tuple(attempted)


__all__ = [
    "EncoderProfile",
    "get_encoder_profile",
    "list_encoder_profiles",
    "codec_available",
    "select_encoder_profile",
]
