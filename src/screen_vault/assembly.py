"""Collection of encoder output into a single playable recording."""
from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class EmptyCaptureError(RuntimeError):
    """Raised when a capture produced no usable media."""

    def __init__(self, message: str = "Recording completed but no data was captured. Please try again.") -> None:
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class EncodedFragment:
    """One unit of encoder output in arrival order."""

    payload: bytes
    sequence: int

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True, slots=True)
class AssembledRecording:
    """The concatenated recording handed to preview and upload."""

    payload: bytes
    content_type: str
    duration_seconds: int

    @property
    def size(self) -> int:
        return len(self.payload)

    def write_to(self, path) -> int:
        with open(path, "wb") as handle:
            handle.write(self.payload)
        return self.size


class MediaAssembler:
    """Accumulates fragments from a single writer and joins them on completion."""

    def __init__(self) -> None:
        self._fragments: list[EncodedFragment] = []
        self._last_sequence: int | None = None
        self._byte_count = 0

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    @property
    def byte_count(self) -> int:
        return self._byte_count

    def append(self, fragment: EncodedFragment) -> bool:
        """Accept *fragment* unless it is empty or out of order.

        Returns ``True`` when the fragment was stored.
        """

        if fragment.size <= 0:
            logger.warning("Dropping empty fragment #%d", fragment.sequence)
            return False
        if self._last_sequence is not None and fragment.sequence <= self._last_sequence:
            logger.warning(
                "Dropping out-of-order fragment #%d (last accepted #%d)",
                fragment.sequence,
                self._last_sequence,
            )
            return False
        self._fragments.append(fragment)
        self._last_sequence = fragment.sequence
        self._byte_count += fragment.size
        return True

    def finalize(self, content_type: str, duration_seconds: int) -> AssembledRecording:
        if not self._fragments:
            raise EmptyCaptureError()
        payload = b"".join(fragment.payload for fragment in self._fragments)
        return AssembledRecording(
            payload=payload,
            content_type=content_type,
            duration_seconds=int(duration_seconds),
        )


__all__ = [
    "AssembledRecording",
    "EmptyCaptureError",
    "EncodedFragment",
    "MediaAssembler",
]
