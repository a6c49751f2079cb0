"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import shlex
from typing import Any, Mapping, Sequence

DEFAULT_VIDEO_CODEC = "libx264"
DEFAULT_AUDIO_CODEC = "aac"
DEFAULT_PRESET = "fast"
DEFAULT_CRF = 22


def engine_command(binary: str | Sequence[str]) -> list[str]:
    """Return the argv prefix used to launch the engine.

    ``binary`` may be a plain executable name, a shell-style string with
    arguments, or an explicit argv list (e.g. an interpreter plus a script).
    """
    if isinstance(binary, str):
        parts = shlex.split(binary)
    else:
        parts = [str(part) for part in binary]
    if not parts:
        raise ValueError("engine binary must not be empty")
    return parts


def version_args() -> list[str]:
    return ["-hide_banner", "-version"]


def probe_args(input_name: str) -> list[str]:
    """Return arguments for the pre-analysis pass.

    No output is given, so ffmpeg prints the input's stream description and
    exits non-zero. Only that diagnostic text is of interest.
    """
    return ["-hide_banner", "-i", input_name]


def transcode_args(
    input_name: str,
    output_name: str,
    *,
    video_codec: str = DEFAULT_VIDEO_CODEC,
    preset: str = DEFAULT_PRESET,
    crf: int = DEFAULT_CRF,
    audio_codec: str = DEFAULT_AUDIO_CODEC,
    extra_args: Sequence[str] = (),
) -> list[str]:
    """Return input/output arguments for the main encode.

    ffmpeg treats options appearing before ``-i`` as applying to that input;
    every codec option here follows ``-i`` so it targets the output.
    """
    return [
        "-hide_banner",
        "-y",
        "-i",
        input_name,
        "-c:v",
        video_codec,
        "-preset",
        preset,
        "-crf",
        str(crf),
        "-c:a",
        audio_codec,
        *[str(arg) for arg in extra_args],
        output_name,
    ]


def transcode_args_from_config(input_name: str, transcode_cfg: Mapping[str, Any]) -> list[str]:
    extra = transcode_cfg.get("extra_args") or []
    if isinstance(extra, str):
        extra = shlex.split(extra)
    return transcode_args(
        input_name,
        str(transcode_cfg.get("output_name", "output.mp4")),
        video_codec=str(transcode_cfg.get("video_codec", DEFAULT_VIDEO_CODEC)),
        preset=str(transcode_cfg.get("preset", DEFAULT_PRESET)),
        crf=int(transcode_cfg.get("crf", DEFAULT_CRF)),
        audio_codec=str(transcode_cfg.get("audio_codec", DEFAULT_AUDIO_CODEC)),
        extra_args=list(extra),
    )
