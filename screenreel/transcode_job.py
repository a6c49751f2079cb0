"""
Cancelable, progress-reporting transcode of captured media segments.

A ``TranscodeJob`` owns at most one engine handle per run. The run writes the
concatenated segments into the engine's scratch directory, probes the input
for duration/fps/resolution, then runs the main encode while racing three
signals: normal completion, the cancel token, and the safety timeout.

Outcomes visible to the caller:

* ``EncodedArtifact`` with ``outcome=COMPLETED``: the finished MP4.
* ``EncodedArtifact`` with ``outcome=FALLBACK``: the engine failed; the bytes
  are the original segments concatenated and re-tagged with the target MIME.
* ``JobCancelledError`` / ``JobTimeoutError``: the run was cancelled by the
  user or by the safety timeout. Cancellation always wins over the fallback.
* ``EngineInitError``: the engine could not be started; the job is idle again.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from screenreel.config import get_cfg
from screenreel.engine import EngineHandle, EngineLifecycleManager, EngineTick
from screenreel.ffmpeg_io import probe_args, transcode_args_from_config
from screenreel.media import (
    MediaSegment,
    as_segments,
    concat_segments,
    extension_for_mime,
    source_mime_type,
)
from screenreel.progress import FfmpegLogEstimator, ProgressEstimator, safety_timeout_ms

log = logging.getLogger("transcode_job")


class JobState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class CancelReason(str, Enum):
    USER = "user"
    TIMEOUT = "timeout"


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    FALLBACK = "fallback"


class TranscodeError(Exception):
    """Base class for errors raised across the job boundary."""


class AlreadyProcessingError(TranscodeError):
    """``encode`` was called while a run is in flight."""


class JobDestroyedError(TranscodeError):
    """The job was destroyed and cannot run again."""


class JobCancelledError(TranscodeError):
    """The run was cancelled before producing an artifact."""

    reason = CancelReason.USER


class JobTimeoutError(JobCancelledError):
    """The run exceeded its safety budget and was cancelled by the job itself."""

    reason = CancelReason.TIMEOUT


class TranscodeFailure(TranscodeError):
    """Engine-side failure; absorbed into the pass-through fallback."""


@dataclass(frozen=True)
class EncodedArtifact:
    data: bytes
    mime_type: str
    outcome: JobOutcome

    @property
    def fallback(self) -> bool:
        return self.outcome is JobOutcome.FALLBACK

    def __len__(self) -> int:
        return len(self.data)


class CancelToken:
    """Single-use cancellation signal, safe to fire from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self.reason: CancelReason | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: CancelReason) -> bool:
        """Fire the token. Only the first call wins and returns True."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    async def wait(self, poll_interval: float) -> CancelReason | None:
        while not self._event.is_set():
            await asyncio.sleep(poll_interval)
        return self.reason


ProgressCallback = Callable[[float], None]
CancelCallback = Callable[[CancelReason], None]
FinishedCallback = Callable[["TranscodeJob"], None]


class TranscodeJob:
    def __init__(
        self,
        engine_manager: Optional[EngineLifecycleManager] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        on_cancelled: Optional[CancelCallback] = None,
        on_finished: Optional[FinishedCallback] = None,
        estimator: Optional[ProgressEstimator] = None,
        cfg: Optional[Mapping[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> None:
        cfg = cfg if cfg is not None else get_cfg()
        self.job_id = job_id or uuid.uuid4().hex[:12]
        self._engine_manager = engine_manager or EngineLifecycleManager(cfg=cfg)
        self._transcode_cfg = dict(cfg.get("transcode", {}))
        self._poll_interval = float(cfg.get("engine", {}).get("poll_interval_ms", 20)) / 1000.0
        self._estimator: ProgressEstimator = estimator or FfmpegLogEstimator(cfg.get("progress"))

        self.on_progress = on_progress
        self.on_cancelled = on_cancelled
        self.on_finished = on_finished

        self.state = JobState.IDLE
        self.cancel_reason: CancelReason | None = None
        self.last_progress = 0.0
        self.safety_timeout_ms = self._budget(None)

        self._token: CancelToken | None = None
        self._engine: EngineHandle | None = None
        self._engine_lock = threading.Lock()
        # guards terminal state transitions against cancel() from other threads
        self._state_lock = threading.Lock()
        self._destroyed = False

    def __repr__(self) -> str:
        return f"<TranscodeJob {self.job_id} state={self.state.value}>"

    # ------------------------------------------------------------------
    # Read-only views of the current run
    # ------------------------------------------------------------------
    @property
    def target_mime_type(self) -> str:
        return str(self._transcode_cfg.get("target_mime_type", "video/mp4"))

    @property
    def current_frame(self) -> int:
        return self._estimator.signals.current_frame

    @property
    def total_frames(self) -> int:
        return self._estimator.signals.total_frames

    @property
    def estimated_duration(self) -> float:
        return self._estimator.signals.estimated_duration

    @property
    def complexity_factor(self) -> float | None:
        return self._estimator.signals.complexity_factor

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def processing(self) -> bool:
        return self.state is JobState.PROCESSING

    def _budget(self, complexity_factor: float | None) -> int:
        return safety_timeout_ms(
            complexity_factor,
            base_ms=int(self._transcode_cfg.get("base_timeout_ms", 180_000)),
            max_ms=int(self._transcode_cfg.get("max_timeout_ms", 600_000)),
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def encode(self, segments: Iterable[MediaSegment | bytes]) -> EncodedArtifact:
        if self._destroyed:
            raise JobDestroyedError(f"job {self.job_id} has been destroyed")
        if self.state is JobState.PROCESSING:
            raise AlreadyProcessingError(f"job {self.job_id} is already processing")

        segments = as_segments(segments)
        token = CancelToken()
        self._token = token
        self.state = JobState.PROCESSING
        self.cancel_reason = None
        self.last_progress = 0.0
        self._estimator.reset()
        self.safety_timeout_ms = self._budget(None)

        try:
            engine = await self._engine_manager.acquire()
        except BaseException as exc:
            if token.cancelled:
                self._notify_finished()
                raise self._cancelled_error() from exc
            self.state = JobState.IDLE
            raise

        with self._engine_lock:
            self._engine = engine
        if token.cancelled:
            # cancel() ran while the engine was loading
            self._release_engine()
            self._notify_finished()
            raise self._cancelled_error()

        unsubscribers = [
            engine.log_lines.subscribe(self._on_log_line),
            engine.ticks.subscribe(self._on_tick),
        ]
        self._report(self._estimator.ratio())
        try:
            data = await self._run(engine, segments)
        except JobCancelledError:
            raise
        except asyncio.CancelledError:
            self._cancel(CancelReason.USER)
            raise
        except Exception as exc:  # noqa: BLE001 - engine failures become the fallback
            if not self._finish(token, JobState.FAILED):
                raise self._cancelled_error() from exc
            return self._fallback(segments, exc)
        else:
            if not self._finish(token, JobState.COMPLETED):
                raise self._cancelled_error()
            self._report(1.0)
            log.info(
                "Transcode job %s completed: %d bytes in, %d bytes out",
                self.job_id,
                sum(len(s) for s in segments),
                len(data),
            )
            return EncodedArtifact(data, self.target_mime_type, JobOutcome.COMPLETED)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            self._release_engine()
            self._notify_finished()

    async def _run(self, engine: EngineHandle, segments: list[MediaSegment]) -> bytes:
        cfg = self._transcode_cfg
        input_name = f"input.{extension_for_mime(source_mime_type(segments), 'webm')}"
        output_name = str(cfg.get("output_name", "output.mp4"))

        await engine.write_file(input_name, concat_segments(segments))
        self._check_cancelled()

        if cfg.get("probe_enabled", True):
            # no output file is given, so a non-zero exit is expected here
            rc = await self._race(engine.exec(probe_args(input_name)), self.safety_timeout_ms)
            log.debug("Probe for job %s exited with rc=%s", self.job_id, rc)
            self._check_cancelled()

        default_total = int(cfg.get("default_total_frames", 300))
        if self._estimator.apply_default_total(default_total):
            log.debug("Job %s: no frame estimate, assuming %d frames", self.job_id, default_total)

        self.safety_timeout_ms = self._budget(self._estimator.signals.complexity_factor)
        log.info(
            "Transcode job %s: total_frames=%s duration=%.2fs budget=%dms",
            self.job_id,
            self.total_frames,
            self.estimated_duration,
            self.safety_timeout_ms,
        )

        rc = await self._race(
            engine.exec(transcode_args_from_config(input_name, cfg)), self.safety_timeout_ms
        )
        if rc != 0:
            raise TranscodeFailure(f"engine exited with code {rc}")
        try:
            data = await engine.read_file(output_name)
        except FileNotFoundError as exc:
            raise TranscodeFailure(f"engine produced no {output_name}") from exc
        if not data:
            raise TranscodeFailure(f"engine produced an empty {output_name}")

        for name in (input_name, output_name):
            try:
                await engine.delete_file(name)
            except OSError as exc:
                log.warning("Job %s: could not delete %s: %s", self.job_id, name, exc)
        return data

    async def _race(self, run: Any, timeout_ms: int) -> int:
        token = self._token
        assert token is not None
        exec_task = asyncio.ensure_future(run)
        cancel_task = asyncio.ensure_future(token.wait(self._poll_interval))
        try:
            done, _pending = await asyncio.wait(
                {exec_task, cancel_task},
                timeout=timeout_ms / 1000.0,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            exec_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if exec_task in done:
            return exec_task.result()
        if not done:
            log.warning(
                "Transcode job %s exceeded its %d ms safety budget", self.job_id, timeout_ms
            )
            self._cancel(CancelReason.TIMEOUT)
        # the engine has been killed; let the exec unwind before reporting
        await asyncio.gather(exec_task, return_exceptions=True)
        raise self._cancelled_error()

    def _check_cancelled(self) -> None:
        if self._token is not None and self._token.cancelled:
            raise self._cancelled_error()

    def _cancelled_error(self) -> JobCancelledError:
        reason = self._token.reason if self._token is not None else CancelReason.USER
        if reason is CancelReason.TIMEOUT:
            return JobTimeoutError(
                f"job {self.job_id} exceeded its {self.safety_timeout_ms} ms safety budget"
            )
        return JobCancelledError(f"job {self.job_id} was cancelled")

    def _finish(self, token: CancelToken, state: JobState) -> bool:
        """Move to a terminal state unless a cancel already won."""
        with self._state_lock:
            if token.cancelled:
                return False
            self.state = state
            return True

    def _fallback(self, segments: list[MediaSegment], exc: BaseException) -> EncodedArtifact:
        log.warning(
            "Transcode job %s failed (%s); returning pass-through %s",
            self.job_id,
            exc,
            self.target_mime_type,
        )
        return EncodedArtifact(concat_segments(segments), self.target_mime_type, JobOutcome.FALLBACK)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------
    def _on_log_line(self, line: str) -> None:
        self._estimator.observe_line(line)

    def _on_tick(self, _tick: EngineTick) -> None:
        self._report(self._estimator.ratio())

    def _report(self, ratio: float) -> None:
        token = self._token
        if token is None or token.cancelled or self._destroyed:
            return
        ratio = min(max(float(ratio), self.last_progress), 1.0)
        self.last_progress = ratio
        callback = self.on_progress
        if callback is not None:
            callback(ratio)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _release_engine(self) -> None:
        with self._engine_lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            self._engine_manager.release(engine)

    def _notify_finished(self) -> None:
        callback = self.on_finished
        if callback is None:
            return
        try:
            callback(self)
        except Exception:  # noqa: BLE001
            log.exception("on_finished hook failed for job %s", self.job_id)

    def _cancel(self, reason: CancelReason) -> bool:
        with self._state_lock:
            if self.state is not JobState.PROCESSING:
                return False
            token = self._token
            if token is None or not token.cancel(reason):
                return False
            self.state = JobState.CANCELLED
            self.cancel_reason = reason
        log.info("Transcode job %s cancelled (%s)", self.job_id, reason.value)
        self._release_engine()
        callback = self.on_cancelled
        if callback is not None:
            try:
                callback(reason)
            except Exception:  # noqa: BLE001
                log.exception("on_cancelled callback failed for job %s", self.job_id)
        return True

    def cancel(self) -> bool:
        """Cancel the current run. Returns False when there was nothing to cancel."""
        return self._cancel(CancelReason.USER)

    def destroy(self) -> None:
        if self._destroyed:
            return
        if self.state is JobState.PROCESSING:
            self._cancel(CancelReason.USER)
        self._destroyed = True
        self._release_engine()
        self.on_progress = None
        self.on_cancelled = None
        self.on_finished = None
        self._estimator.reset()
        self.last_progress = 0.0
