"""Captured media segments and MIME helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

DEFAULT_SOURCE_MIME = "video/webm"

_EXTENSIONS: dict[str, str] = {
    "video/webm": "webm",
    "audio/webm": "webm",
    "video/mp4": "mp4",
    "audio/mp4": "m4a",
    "video/x-matroska": "mkv",
    "video/quicktime": "mov",
    "video/ogg": "ogv",
    "audio/ogg": "ogg",
    "video/mp2t": "ts",
}


@dataclass(frozen=True)
class MediaSegment:
    """One chunk of captured media; order is significant."""

    data: bytes
    mime_type: str = ""

    def __len__(self) -> int:
        return len(self.data)


def base_mime_type(mime_type: str) -> str:
    """Strip codec parameters: ``video/webm;codecs=vp9`` -> ``video/webm``."""
    return mime_type.split(";", 1)[0].strip().lower()


def source_mime_type(segments: Sequence[MediaSegment], default: str = DEFAULT_SOURCE_MIME) -> str:
    for segment in segments:
        if segment.mime_type:
            return segment.mime_type
    return default


def extension_for_mime(mime_type: str, default: str = "bin") -> str:
    return _EXTENSIONS.get(base_mime_type(mime_type), default)


def concat_segments(segments: Iterable[MediaSegment]) -> bytes:
    return b"".join(segment.data for segment in segments)


def as_segments(chunks: Iterable[bytes | MediaSegment], mime_type: str = "") -> list[MediaSegment]:
    """Normalise raw byte chunks into ``MediaSegment`` instances."""
    segments: list[MediaSegment] = []
    for chunk in chunks:
        if isinstance(chunk, MediaSegment):
            segments.append(chunk)
        else:
            segments.append(MediaSegment(bytes(chunk), mime_type))
    return segments
