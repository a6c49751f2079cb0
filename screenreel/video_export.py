"""MP4 export of stored recordings."""
from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from screenreel.config import get_cfg
from screenreel.engine import EngineInitError
from screenreel.job_registry import JobRegistry
from screenreel.media import MediaSegment, as_segments, concat_segments
from screenreel.transcode_job import (
    CancelCallback,
    EncodedArtifact,
    JobCancelledError,
    JobOutcome,
    ProgressCallback,
    TranscodeError,
    TranscodeJob,
)

log = logging.getLogger("video_export")

_UNSAFE_CHARS = re.compile(r'[\x00-\x1f\\/:*?"<>|]+')


def generate_file_name(title: str, now: Optional[datetime] = None) -> str:
    """``YYYY-MM-DD_HH-MM_<title>.mp4`` in local time."""
    now = now or datetime.now()
    safe_title = _UNSAFE_CHARS.sub("_", title or "").strip(" .") or "recording"
    return f"{now:%Y-%m-%d_%H-%M}_{safe_title}.mp4"


@dataclass(frozen=True)
class ExportResult:
    path: Path
    outcome: JobOutcome
    size_bytes: int


def _write_bytes_atomic(destination: Path, data: bytes) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_suffix(destination.suffix + ".tmp")
    tmp_path.write_bytes(data)
    os.replace(tmp_path, destination)


class VideoExporter:
    def __init__(
        self,
        registry: Optional[JobRegistry] = None,
        *,
        cfg: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.cfg = cfg if cfg is not None else get_cfg()
        self.registry = registry or JobRegistry(cfg=self.cfg)
        self.target_mime_type = str(self.cfg.get("transcode", {}).get("target_mime_type", "video/mp4"))
        self.active_job: Optional[TranscodeJob] = None

    def _pass_through(self, segments: list[MediaSegment]) -> EncodedArtifact:
        return EncodedArtifact(concat_segments(segments), self.target_mime_type, JobOutcome.FALLBACK)

    async def create_mp4(
        self,
        segments: Iterable[MediaSegment | bytes],
        use_engine: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        on_cancelled: Optional[CancelCallback] = None,
        *,
        job: Optional[TranscodeJob] = None,
    ) -> EncodedArtifact:
        """Produce an MP4 artifact.

        Without the engine the captured bytes are only re-tagged. With it, a
        transcode job runs (``job`` when given, else a new one from the
        registry); cancellation propagates, any other failure (including an
        engine that will not start) falls back to the re-tagged bytes. A job
        created here leaves the registry and is destroyed before returning.
        """
        items = as_segments(segments)
        if not use_engine:
            log.info("Using native capture format for export")
            return self._pass_through(items)

        owned = job is None
        if job is None:
            job = self.registry.create_job(on_progress, on_cancelled)
        self.active_job = job
        try:
            return await job.encode(items)
        except JobCancelledError:
            raise
        except (EngineInitError, TranscodeError) as exc:
            log.error("Error using the encoding engine, falling back to native format: %s", exc)
            return self._pass_through(items)
        finally:
            if self.active_job is job:
                self.active_job = None
            if owned:
                self.registry.discard(job)
                job.destroy()

    async def export(
        self,
        segments: Iterable[MediaSegment | bytes],
        title: str,
        dest_dir: str | os.PathLike[str] | None = None,
        *,
        use_engine: bool = True,
        on_progress: Optional[ProgressCallback] = None,
        on_cancelled: Optional[CancelCallback] = None,
        job: Optional[TranscodeJob] = None,
        now: Optional[datetime] = None,
    ) -> ExportResult:
        artifact = await self.create_mp4(segments, use_engine, on_progress, on_cancelled, job=job)
        directory = Path(dest_dir) if dest_dir is not None else Path(self.cfg["paths"]["exports_dir"])
        destination = directory / generate_file_name(title, now)
        await asyncio.to_thread(_write_bytes_atomic, destination, artifact.data)
        log.info(
            "Exported %s (%d bytes, %s)", destination, len(artifact), artifact.outcome.value
        )
        return ExportResult(destination, artifact.outcome, len(artifact))

    def cancel_processing(self) -> bool:
        log.info("Cancellation requested")
        job = self.active_job
        self.active_job = None
        if job is None:
            return False
        return job.cancel()
