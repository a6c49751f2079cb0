"""
Progress inference from ffmpeg diagnostics.

ffmpeg reports no completion percentage, only free-form stderr text. The
estimator scrapes frame counts, stream duration, frame rate and resolution out
of that text and turns them into a staged ratio that starts low and climbs
towards (but never reaches) 1.0; the job reports the final 1.0 itself.

``ProgressEstimator`` is the seam: an engine that exposes exact percentages
can supply its own implementation without touching the job state machine.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_DURATION_UNKNOWN_RE = re.compile(r"Duration:\s*N/A")
_FPS_RE = re.compile(r"(\d+(?:\.\d+)?)\s+fps\b")
_RESOLUTION_RE = re.compile(r"\b(\d{2,5})x(\d{2,5})\b")

DEFAULT_BASE_TIMEOUT_MS = 180_000
DEFAULT_MAX_TIMEOUT_MS = 600_000


@dataclass
class ProgressSignals:
    """Raw signals gathered during one run."""

    current_frame: int = 0
    total_frames: int = 0
    estimated_duration: float = 0.0
    fps: float | None = None
    width: int | None = None
    height: int | None = None
    duration_unknown: bool = False
    complexity_factor: float | None = None


class ProgressEstimator(Protocol):
    """Turns engine diagnostics into a completion ratio in [0, 1)."""

    signals: ProgressSignals

    def reset(self) -> None: ...

    def observe_line(self, line: str) -> None: ...

    def ratio(self) -> float: ...

    def apply_default_total(self, frames: int) -> bool: ...


class FfmpegLogEstimator:
    """Staged estimator driven by ffmpeg's stderr text."""

    def __init__(self, cfg: Optional[Mapping[str, Any]] = None) -> None:
        cfg = dict(cfg or {})
        self.initial_ratio = float(cfg.get("initial_ratio", 0.05))
        self.frames_floor_ratio = float(cfg.get("frames_floor_ratio", 0.1))
        self.max_ratio = float(cfg.get("max_ratio", 0.99))
        self.min_trusted_total_frames = int(cfg.get("min_trusted_total_frames", 10))
        self.fallback_frame_window = int(cfg.get("fallback_frame_window", 300))
        self.fallback_span = float(cfg.get("fallback_span", 0.89))
        self.reference_pixels = float(cfg.get("reference_pixels", 1920 * 1080))
        self.max_complexity_factor = float(cfg.get("max_complexity_factor", 4.0))
        self.unknown_duration_frames = int(cfg.get("unknown_duration_frames", 1800))
        self.signals = ProgressSignals()

    def reset(self) -> None:
        self.signals = ProgressSignals()

    @property
    def current_frame(self) -> int:
        return self.signals.current_frame

    @property
    def total_frames(self) -> int:
        return self.signals.total_frames

    @property
    def estimated_duration(self) -> float:
        return self.signals.estimated_duration

    @property
    def complexity_factor(self) -> float | None:
        return self.signals.complexity_factor

    def observe_line(self, line: str) -> None:
        if not line:
            return
        sig = self.signals

        match = _FRAME_RE.search(line)
        if match is not None:
            # stats line ("frame= 120 fps= 30 ..."); its fps is encode speed
            frame = int(match.group(1))
            if frame > sig.current_frame:
                sig.current_frame = frame
            return

        if not sig.estimated_duration:
            match = _DURATION_RE.search(line)
            if match is not None:
                hours, minutes, seconds = match.groups()
                sig.estimated_duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
            elif _DURATION_UNKNOWN_RE.search(line):
                sig.duration_unknown = True
                if sig.width and sig.height and sig.complexity_factor is None:
                    self._apply_complexity(sig.width, sig.height)

        match = _FPS_RE.search(line)
        if match is not None:
            sig.fps = float(match.group(1))
            if sig.estimated_duration and not sig.total_frames:
                sig.total_frames = round(sig.estimated_duration * sig.fps)

        match = _RESOLUTION_RE.search(line)
        if match is not None:
            sig.width, sig.height = int(match.group(1)), int(match.group(2))
            if sig.duration_unknown and not sig.estimated_duration and sig.complexity_factor is None:
                self._apply_complexity(sig.width, sig.height)

    def _apply_complexity(self, width: int, height: int) -> None:
        sig = self.signals
        factor = min(width * height / self.reference_pixels, self.max_complexity_factor)
        sig.complexity_factor = factor
        if not sig.total_frames:
            sig.total_frames = round(self.unknown_duration_frames * factor)

    def apply_default_total(self, frames: int) -> bool:
        """Use ``frames`` as the total estimate when none was obtained."""
        if self.signals.total_frames:
            return False
        self.signals.total_frames = int(frames)
        return True

    def ratio(self) -> float:
        current = self.signals.current_frame
        total = self.signals.total_frames
        if current == 0:
            return self.initial_ratio
        if total > current and total > self.min_trusted_total_frames:
            return min(
                self.frames_floor_ratio + (current / total) * (1.0 - self.frames_floor_ratio),
                self.max_ratio,
            )
        window = self.fallback_frame_window
        return min(
            self.frames_floor_ratio + min(current, window) / window * self.fallback_span,
            self.max_ratio,
        )


def safety_timeout_ms(
    complexity_factor: float | None,
    *,
    base_ms: int = DEFAULT_BASE_TIMEOUT_MS,
    max_ms: int = DEFAULT_MAX_TIMEOUT_MS,
) -> int:
    """Return the safety budget for one engine run.

    The base budget applies unless a complexity factor was derived from the
    source resolution; then it scales, capped at ``max_ms`` and never below
    the base.
    """
    if complexity_factor is None:
        return int(base_ms)
    factor = max(1.0, float(complexity_factor))
    return int(min(base_ms * factor, max_ms))
