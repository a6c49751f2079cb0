import asyncio
import threading

import pytest

from screenreel.engine import EngineHandle, EngineInitError, EngineLifecycleManager
from screenreel.media import MediaSegment
from screenreel.transcode_job import (
    AlreadyProcessingError,
    CancelReason,
    JobCancelledError,
    JobDestroyedError,
    JobOutcome,
    JobState,
    JobTimeoutError,
    TranscodeJob,
)

SEGMENTS = [
    MediaSegment(b"\x1aE\xdf\xa3header", "video/webm;codecs=vp9,opus"),
    MediaSegment(b"cluster-1", "video/webm;codecs=vp9,opus"),
    MediaSegment(b"cluster-2", "video/webm;codecs=vp9,opus"),
]
CONCAT = b"".join(s.data for s in SEGMENTS)


def _job(cfg, **kwargs):
    return TranscodeJob(EngineLifecycleManager(cfg=cfg), cfg=cfg, **kwargs)


def test_encode_completes_with_non_decreasing_progress(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    ratios: list[float] = []
    job = _job(make_cfg(), on_progress=ratios.append)

    artifact = asyncio.run(job.encode(SEGMENTS))

    assert artifact.outcome is JobOutcome.COMPLETED
    assert artifact.mime_type == "video/mp4"
    assert artifact.data == b"MP4:" + CONCAT
    assert job.state is JobState.COMPLETED
    assert job.total_frames == 3000
    assert job.estimated_duration == 100
    assert ratios[0] == 0.05
    assert ratios[-1] == 1.0
    assert ratios == sorted(ratios)
    assert ratios.count(1.0) == 1


def test_engine_failure_returns_pass_through_fallback(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")
    ratios: list[float] = []
    cancelled: list[CancelReason] = []
    job = _job(make_cfg(), on_progress=ratios.append, on_cancelled=cancelled.append)

    artifact = asyncio.run(job.encode(SEGMENTS))

    assert artifact.fallback
    assert artifact.outcome is JobOutcome.FALLBACK
    assert artifact.mime_type == "video/mp4"
    assert artifact.data == CONCAT
    assert job.state is JobState.FAILED
    assert 1.0 not in ratios
    assert cancelled == []


def test_encode_while_processing_is_rejected(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")

    async def runner():
        ticked = asyncio.Event()
        job = _job(make_cfg(), on_progress=lambda r: r > 0.05 and ticked.set())
        task = asyncio.create_task(job.encode(SEGMENTS))
        await asyncio.wait_for(ticked.wait(), timeout=10)
        frame_before = job.current_frame
        total_before = job.total_frames

        with pytest.raises(AlreadyProcessingError):
            await job.encode([MediaSegment(b"other")])

        assert job.state is JobState.PROCESSING
        assert job.current_frame == frame_before
        assert job.total_frames == total_before
        job.cancel()
        with pytest.raises(JobCancelledError):
            await task

    asyncio.run(runner())


def test_cancel_twice_fires_callback_once_and_stops_progress(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
    events: list[tuple[str, object]] = []

    async def runner():
        ticked = asyncio.Event()

        def on_progress(ratio: float) -> None:
            events.append(("progress", ratio))
            if ratio > 0.05:
                ticked.set()

        job = _job(
            make_cfg(),
            on_progress=on_progress,
            on_cancelled=lambda reason: events.append(("cancelled", reason)),
        )
        task = asyncio.create_task(job.encode(SEGMENTS))
        await asyncio.wait_for(ticked.wait(), timeout=10)
        assert job.cancel() is True
        assert job.cancel() is False
        with pytest.raises(JobCancelledError) as excinfo:
            await task
        return job, excinfo.value

    job, error = asyncio.run(runner())

    assert not isinstance(error, JobTimeoutError)
    assert error.reason is CancelReason.USER
    assert job.state is JobState.CANCELLED
    assert job.cancel_reason is CancelReason.USER
    cancel_events = [e for e in events if e[0] == "cancelled"]
    assert cancel_events == [("cancelled", CancelReason.USER)]
    cancel_idx = events.index(cancel_events[0])
    assert all(kind != "progress" for kind, _ in events[cancel_idx + 1:])
    assert ("progress", 1.0) not in events


def test_cancel_from_another_thread(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")

    async def runner():
        ticked = asyncio.Event()
        job = _job(make_cfg(), on_progress=lambda r: r > 0.05 and ticked.set())
        task = asyncio.create_task(job.encode(SEGMENTS))
        await asyncio.wait_for(ticked.wait(), timeout=10)
        await asyncio.to_thread(job.cancel)
        with pytest.raises(JobCancelledError):
            await asyncio.wait_for(task, timeout=10)
        return job

    job = asyncio.run(runner())
    assert job.state is JobState.CANCELLED


def test_safety_timeout_cancels_with_distinct_reason(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
    reasons: list[CancelReason] = []
    job = _job(make_cfg(transcode={"base_timeout_ms": 500}), on_cancelled=reasons.append)

    with pytest.raises(JobTimeoutError) as excinfo:
        asyncio.run(job.encode(SEGMENTS))

    assert isinstance(excinfo.value, JobCancelledError)
    assert excinfo.value.reason is CancelReason.TIMEOUT
    assert reasons == [CancelReason.TIMEOUT]
    assert job.state is JobState.CANCELLED
    assert job.cancel_reason is CancelReason.TIMEOUT


def test_unknown_duration_scales_safety_budget(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    monkeypatch.setenv("FAKE_FFMPEG_PROBE", "unknown")
    job = _job(make_cfg())

    artifact = asyncio.run(job.encode(SEGMENTS))

    assert artifact.outcome is JobOutcome.COMPLETED
    assert job.complexity_factor == 4
    assert job.total_frames == 7200
    assert job.safety_timeout_ms == 600_000


def test_engine_init_error_leaves_job_idle(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_INIT_FAIL", "1")
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    job = _job(make_cfg())

    with pytest.raises(EngineInitError):
        asyncio.run(job.encode(SEGMENTS))
    assert job.state is JobState.IDLE

    monkeypatch.delenv("FAKE_FFMPEG_INIT_FAIL")
    artifact = asyncio.run(job.encode(SEGMENTS))
    assert artifact.outcome is JobOutcome.COMPLETED


def test_destroy_mid_processing_terminates_engine_once(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
    terminate_calls: list[EngineHandle] = []
    original_terminate = EngineHandle.terminate

    def counting_terminate(self):
        terminate_calls.append(self)
        return original_terminate(self)

    monkeypatch.setattr(EngineHandle, "terminate", counting_terminate)

    async def runner():
        ticked = asyncio.Event()
        job = _job(make_cfg(), on_progress=lambda r: r > 0.05 and ticked.set())
        task = asyncio.create_task(job.encode(SEGMENTS))
        await asyncio.wait_for(ticked.wait(), timeout=10)
        job.destroy()
        job.destroy()
        with pytest.raises(JobCancelledError):
            await task
        with pytest.raises(JobDestroyedError):
            await job.encode(SEGMENTS)
        return job

    job = asyncio.run(runner())
    assert len(terminate_calls) == 1
    assert job.destroyed
    assert job.on_progress is None and job.on_cancelled is None


def test_cancel_when_idle_is_noop(make_cfg):
    cancelled: list[CancelReason] = []
    job = _job(make_cfg(), on_cancelled=cancelled.append)

    assert job.cancel() is False
    assert job.state is JobState.IDLE
    assert cancelled == []


def test_rerun_resets_counters(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    ratios: list[float] = []
    job = _job(make_cfg(), on_progress=ratios.append)

    asyncio.run(job.encode(SEGMENTS))
    first_run = list(ratios)
    ratios.clear()
    asyncio.run(job.encode(SEGMENTS))

    assert ratios[0] == 0.05
    assert ratios == first_run


class _CancelOnCompletionLock:
    """Starts a competing cancel() while the completing thread holds the lock."""

    def __init__(self, job):
        self._inner = threading.Lock()
        self._job = job
        self.thread = None
        self.results: list[bool] = []

    def __enter__(self):
        self._inner.acquire()
        if self.thread is None:
            self.thread = threading.Thread(target=lambda: self.results.append(self._job.cancel()))
            self.thread.start()
            self.thread.join(0.2)
        return self

    def __exit__(self, *exc_info):
        self._inner.release()
        return False


def test_cancel_racing_completion_does_not_report_both(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    cancelled: list[CancelReason] = []
    job = _job(make_cfg(), on_cancelled=cancelled.append)
    lock = _CancelOnCompletionLock(job)
    job._state_lock = lock

    artifact = asyncio.run(job.encode(SEGMENTS))
    lock.thread.join(5)

    assert artifact.outcome is JobOutcome.COMPLETED
    assert job.state is JobState.COMPLETED
    assert lock.results == [False]
    assert cancelled == []
