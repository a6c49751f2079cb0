"""Creates transcode jobs and keeps track of the ones still alive."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Mapping, Optional

from screenreel.config import get_cfg
from screenreel.engine import EngineLifecycleManager
from screenreel.progress import ProgressEstimator
from screenreel.transcode_job import CancelCallback, CancelReason, ProgressCallback, TranscodeJob

log = logging.getLogger("job_registry")


class JobRegistry:
    """Live-job set shared by the UI/HTTP layer.

    Jobs leave the set on their own once they finish or are cancelled; the
    removal is scheduled on the running loop and happens once per job no
    matter which path triggered it.
    """

    def __init__(
        self,
        engine_manager: Optional[EngineLifecycleManager] = None,
        *,
        cfg: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._cfg = cfg if cfg is not None else get_cfg()
        self._engine_manager = engine_manager or EngineLifecycleManager(cfg=self._cfg)
        self._lock = threading.Lock()
        self._jobs: dict[str, TranscodeJob] = {}

    def create_job(
        self,
        on_progress: Optional[ProgressCallback] = None,
        on_cancelled: Optional[CancelCallback] = None,
        *,
        estimator: Optional[ProgressEstimator] = None,
    ) -> TranscodeJob:
        job = TranscodeJob(self._engine_manager, on_progress=on_progress, estimator=estimator, cfg=self._cfg)

        def _cancelled(reason: CancelReason) -> None:
            try:
                if on_cancelled is not None:
                    on_cancelled(reason)
            finally:
                self._schedule_removal(job)

        def _finished(finished: TranscodeJob) -> None:
            self._schedule_removal(finished)

        job.on_cancelled = _cancelled
        job.on_finished = _finished
        with self._lock:
            self._jobs[job.job_id] = job
        log.debug("Created transcode job %s", job.job_id)
        return job

    def _schedule_removal(self, job: TranscodeJob) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            self._remove(job)
        else:
            loop.call_soon(self._remove, job)

    def _remove(self, job: TranscodeJob) -> bool:
        with self._lock:
            if self._jobs.get(job.job_id) is not job:
                return False
            del self._jobs[job.job_id]
        log.debug("Removed transcode job %s (%s)", job.job_id, job.state.value)
        return True

    def discard(self, job: TranscodeJob) -> bool:
        """Forget ``job`` now, e.g. after it failed to start its engine."""
        return self._remove(job)

    def cancel_all(self) -> int:
        """Cancel every live job and empty the set. Returns how many were cancelled."""
        with self._lock:
            snapshot = list(self._jobs.values())
        cancelled = 0
        for job in snapshot:
            try:
                if job.cancel():
                    cancelled += 1
            except Exception:  # noqa: BLE001 - one bad job must not block the rest
                log.exception("Failed to cancel transcode job %s", job.job_id)
        with self._lock:
            self._jobs.clear()
        if snapshot:
            log.info("Cancelled %d of %d transcode jobs", cancelled, len(snapshot))
        return cancelled

    def active_count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def jobs(self) -> list[TranscodeJob]:
        with self._lock:
            return list(self._jobs.values())

    def get(self, job_id: str) -> Optional[TranscodeJob]:
        with self._lock:
            return self._jobs.get(job_id)
