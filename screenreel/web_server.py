#!/usr/bin/env python3
"""
HTTP control surface for stored recordings and transcode jobs.

Endpoints:
  GET    /api/recordings                  -> stored recordings, newest first
  GET    /api/recordings/{id}             -> one recording
  DELETE /api/recordings/{id}             -> remove a recording
  POST   /api/recordings/{id}/export      -> start an MP4 export job
  GET    /api/jobs                        -> export jobs + live transcode count
  GET    /api/jobs/{id}                   -> one export job
  POST   /api/jobs/{id}/cancel            -> cancel a running export
  POST   /api/jobs/cancel-all             -> cancel every running export
  GET    /api/jobs/{id}/download          -> finished MP4 as an attachment
  GET    /api/events                      -> Server-Sent Events (job updates)
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from aiohttp import web
from aiohttp.web import AppKey

from screenreel import job_events
from screenreel.config import get_cfg, log_level, reload_cfg
from screenreel.job_events import JobEventBus
from screenreel.job_registry import JobRegistry
from screenreel.recording_store import DirectoryRecordingStore, RecordingNotFoundError, RecordingStore
from screenreel.transcode_job import CancelReason, JobCancelledError, JobTimeoutError, TranscodeJob
from screenreel.video_export import VideoExporter

EVENT_STREAM_HEARTBEAT_SECONDS = 20.0
EVENT_STREAM_RETRY_MILLIS = 5000
EVENT_HISTORY_LIMIT = 256


@dataclass
class ExportRecord:
    job_id: str
    recording_id: str
    title: str
    use_engine: bool
    state: str = "processing"
    progress: float = 0.0
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    outcome: Optional[str] = None
    file_path: Optional[Path] = None
    size_bytes: int = 0
    error: Optional[str] = None
    job: Optional[TranscodeJob] = None
    task: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.state != "processing"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "recording_id": self.recording_id,
            "title": self.title,
            "use_engine": self.use_engine,
            "state": self.state,
            "progress": round(self.progress, 4),
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome,
            "file_name": self.file_path.name if self.file_path else None,
            "size_bytes": self.size_bytes,
            "error": self.error,
        }


SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)
STORE_KEY: AppKey[Any] = web.AppKey("recording_store", object)
REGISTRY_KEY: AppKey[JobRegistry] = web.AppKey("job_registry", JobRegistry)
EVENT_BUS_KEY: AppKey[JobEventBus] = web.AppKey("job_event_bus", JobEventBus)
EXPORTS_KEY: AppKey[dict[str, ExportRecord]] = web.AppKey("export_records", dict)
EXPORTS_DIR_KEY: AppKey[Path] = web.AppKey("exports_dir", Path)


def build_app(
    cfg: Optional[Mapping[str, Any]] = None,
    *,
    store: Optional[RecordingStore] = None,
    registry: Optional[JobRegistry] = None,
    event_bus: Optional[JobEventBus] = None,
) -> web.Application:
    log = logging.getLogger("web_server")
    cfg = cfg if cfg is not None else get_cfg()
    paths = cfg.get("paths", {})

    app = web.Application()
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()
    app[STORE_KEY] = store if store is not None else DirectoryRecordingStore(paths["recordings_dir"])
    app[REGISTRY_KEY] = registry if registry is not None else JobRegistry(cfg=cfg)
    app[EXPORTS_KEY] = {}
    app[EXPORTS_DIR_KEY] = Path(paths["exports_dir"])

    bus = event_bus if event_bus is not None else JobEventBus(history_limit=EVENT_HISTORY_LIMIT)
    app[EVENT_BUS_KEY] = bus

    def _publish(event_type: str, payload: dict[str, Any]) -> None:
        try:
            bus.publish(event_type, payload)
        except Exception:  # noqa: BLE001
            log.debug("Failed to publish job event %s", event_type, exc_info=True)

    async def _init_event_bus(_: web.Application) -> None:
        bus.set_loop(asyncio.get_running_loop())

    async def _shutdown_jobs(app_: web.Application) -> None:
        app_[SHUTDOWN_EVENT_KEY].set()
        app_[REGISTRY_KEY].cancel_all()
        pending = [rec.task for rec in app_[EXPORTS_KEY].values() if rec.task is not None and not rec.task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        bus.close()

    app.on_startup.append(_init_event_bus)
    app.on_cleanup.append(_shutdown_jobs)

    def _store(request: web.Request) -> RecordingStore:
        return request.app[STORE_KEY]

    def _record_or_404(request: web.Request) -> ExportRecord:
        job_id = request.match_info["job_id"]
        record = request.app[EXPORTS_KEY].get(job_id)
        if record is None:
            raise web.HTTPNotFound(reason=f"unknown job {job_id}")
        return record

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------
    async def recordings_list(request: web.Request) -> web.Response:
        recordings = await asyncio.to_thread(_store(request).get_all, False)
        return web.json_response({"recordings": [rec.to_dict() for rec in recordings]})

    async def recording_get(request: web.Request) -> web.Response:
        recording_id = request.match_info["recording_id"]
        recording = await asyncio.to_thread(_store(request).get, recording_id)
        if recording is None:
            raise web.HTTPNotFound(reason=f"unknown recording {recording_id}")
        return web.json_response(recording.to_dict())

    async def recording_delete(request: web.Request) -> web.Response:
        recording_id = request.match_info["recording_id"]
        try:
            await asyncio.to_thread(_store(request).remove, recording_id)
        except RecordingNotFoundError:
            raise web.HTTPNotFound(reason=f"unknown recording {recording_id}")
        _publish(job_events.RECORDINGS_CHANGED, {"reason": "deleted", "id": recording_id})
        return web.json_response({"deleted": recording_id})

    async def recording_export(request: web.Request) -> web.Response:
        recording_id = request.match_info["recording_id"]
        payload: dict[str, Any] = {}
        if request.can_read_body:
            try:
                payload = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                raise web.HTTPBadRequest(reason="request body must be JSON")
            if not isinstance(payload, dict):
                raise web.HTTPBadRequest(reason="request body must be a JSON object")

        recording = await asyncio.to_thread(_store(request).get, recording_id)
        if recording is None:
            raise web.HTTPNotFound(reason=f"unknown recording {recording_id}")

        use_engine = bool(payload.get("use_engine", True))
        title = str(payload.get("title") or recording.title or recording_id)
        registry = request.app[REGISTRY_KEY]
        exports = request.app[EXPORTS_KEY]

        def _on_progress(ratio: float) -> None:
            record.progress = ratio
            _publish(job_events.JOB_PROGRESS, {"id": record.job_id, "progress": ratio})

        def _on_cancelled(reason: CancelReason) -> None:
            record.state = "timed_out" if reason is CancelReason.TIMEOUT else "cancelled"
            _publish(job_events.JOB_CANCELLED, {"id": record.job_id, "reason": reason.value})

        job: Optional[TranscodeJob] = None
        if use_engine:
            job = registry.create_job(_on_progress, _on_cancelled)
            job_id = job.job_id
        else:
            job_id = uuid.uuid4().hex[:12]
        record = ExportRecord(job_id, recording_id, title, use_engine, job=job)
        exports[record.job_id] = record
        exporter = VideoExporter(registry, cfg=cfg)

        async def _run_export() -> None:
            try:
                result = await exporter.export(
                    recording.segments,
                    title,
                    request.app[EXPORTS_DIR_KEY],
                    use_engine=use_engine,
                    job=job,
                )
            except JobTimeoutError as exc:
                record.state = "timed_out"
                record.error = str(exc)
            except JobCancelledError as exc:
                record.state = "cancelled"
                record.error = str(exc)
            except Exception as exc:  # noqa: BLE001 - reported through the job record
                log.exception("Export job %s failed", record.job_id)
                record.state = "failed"
                record.error = str(exc)
                _publish(job_events.JOB_FAILED, {"id": record.job_id, "error": record.error})
            else:
                record.state = "completed"
                record.outcome = result.outcome.value
                record.file_path = result.path
                record.size_bytes = result.size_bytes
                record.progress = 1.0
                _publish(job_events.JOB_COMPLETED, record.to_dict())
            finally:
                record.finished_at = time.time()
                record.job = None
                if job is not None:
                    registry.discard(job)
                    job.destroy()

        record.task = asyncio.create_task(_run_export(), name=f"export-{record.job_id}")
        _publish(job_events.JOB_CREATED, record.to_dict())
        log.info("Export job %s started for recording %s", record.job_id, recording_id)
        return web.json_response({"job": record.to_dict()}, status=202)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    async def jobs_list(request: web.Request) -> web.Response:
        records = sorted(request.app[EXPORTS_KEY].values(), key=lambda rec: rec.created_at, reverse=True)
        return web.json_response(
            {
                "jobs": [rec.to_dict() for rec in records],
                "active": request.app[REGISTRY_KEY].active_count(),
            }
        )

    async def job_get(request: web.Request) -> web.Response:
        return web.json_response(_record_or_404(request).to_dict())

    async def job_cancel(request: web.Request) -> web.Response:
        record = _record_or_404(request)
        job = record.job
        if record.finished or job is None:
            raise web.HTTPConflict(reason=f"job {record.job_id} is not running")
        cancelled = job.cancel()
        if not cancelled:
            raise web.HTTPConflict(reason=f"job {record.job_id} is not transcoding")
        return web.json_response({"cancelled": record.job_id})

    async def jobs_cancel_all(request: web.Request) -> web.Response:
        count = request.app[REGISTRY_KEY].cancel_all()
        return web.json_response({"cancelled": count})

    async def job_download(request: web.Request) -> web.StreamResponse:
        record = _record_or_404(request)
        if record.state != "completed" or record.file_path is None:
            raise web.HTTPConflict(reason=f"job {record.job_id} has no finished file")
        path = record.file_path
        if not path.is_file():
            raise web.HTTPGone(reason=f"export file for job {record.job_id} is gone")
        return web.FileResponse(
            path,
            headers={
                "Content-Type": "video/mp4",
                "Content-Disposition": f'attachment; filename="{path.name}"',
            },
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def events_stream(request: web.Request) -> web.StreamResponse:
        event_bus = request.app[EVENT_BUS_KEY]
        last_event_id = request.headers.get("Last-Event-ID") or request.query.get("last_event_id", "")
        queue = await event_bus.subscribe(last_event_id=last_event_id)

        response = web.StreamResponse(
            status=200,
            headers={
                "Cache-Control": "no-store",
                "Content-Type": "text/event-stream",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        await response.prepare(request)

        heartbeat_chunk = b"event: heartbeat\ndata: {}\n\n"
        shutdown = request.app[SHUTDOWN_EVENT_KEY]
        try:
            await response.write(f"retry: {EVENT_STREAM_RETRY_MILLIS}\n\n".encode("utf-8"))
            while not shutdown.is_set():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=EVENT_STREAM_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    try:
                        await response.write(heartbeat_chunk)
                    except ConnectionResetError:
                        break
                    continue

                if event is None:
                    break

                try:
                    frame = event.encode()
                except (TypeError, ValueError) as exc:
                    log.warning("Failed to serialize job event %s: %s", event.type, exc)
                    continue

                try:
                    await response.write(frame)
                except ConnectionResetError:
                    break
        finally:
            event_bus.unsubscribe(queue)
            with contextlib.suppress(ConnectionResetError, RuntimeError):
                await response.write_eof()
        return response

    app.router.add_get("/api/recordings", recordings_list)
    app.router.add_get("/api/recordings/{recording_id}", recording_get)
    app.router.add_delete("/api/recordings/{recording_id}", recording_delete)
    app.router.add_post("/api/recordings/{recording_id}/export", recording_export)
    app.router.add_get("/api/jobs", jobs_list)
    app.router.add_post("/api/jobs/cancel-all", jobs_cancel_all)
    app.router.add_get("/api/jobs/{job_id}", job_get)
    app.router.add_post("/api/jobs/{job_id}/cancel", job_cancel)
    app.router.add_get("/api/jobs/{job_id}/download", job_download)
    app.router.add_get("/api/events", events_stream)
    return app


class WebServerHandle:
    """Handle returned by start_web_server_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def stop(self, timeout: float = 5.0) -> None:
        log = logging.getLogger("web_server")
        log.info("Stopping web_server ...")
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.app[SHUTDOWN_EVENT_KEY].set)

            async def _cleanup():
                await self.runner.cleanup()

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:  # noqa: BLE001
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("web_server stopped")


def start_web_server_in_thread(
    host: str = "0.0.0.0",
    port: int = 8080,
    *,
    access_log: bool = False,
    cfg: Optional[Mapping[str, Any]] = None,
) -> WebServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    log = logging.getLogger("web_server")
    loop = asyncio.new_event_loop()
    ready = threading.Event()
    boxes: dict[str, Any] = {}

    def _run():
        asyncio.set_event_loop(loop)
        try:
            app = build_app(cfg)
            runner = web.AppRunner(app, access_log=log if access_log else None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except Exception as exc:  # noqa: BLE001 - reported to the caller below
            boxes["error"] = exc
            ready.set()
            return
        boxes["runner"] = runner
        boxes["app"] = app
        log.info("web_server started on %s:%s", host, port)
        ready.set()
        try:
            loop.run_forever()
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(runner.cleanup())
            loop.close()

    t = threading.Thread(target=_run, name="web_server", daemon=True)
    t.start()
    ready.wait()
    if "error" in boxes:
        raise RuntimeError(f"Unable to start web_server: {boxes['error']}") from boxes["error"]
    return WebServerHandle(t, loop, boxes["runner"], boxes["app"])


def cli_main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="screenreel recordings/transcode HTTP server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", help="Python logging level (default: from config).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    level = getattr(logging, args.log_level.upper(), logging.INFO) if args.log_level else log_level(cfg)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    log = logging.getLogger("web_server")

    server_cfg = cfg.get("web_server", {})
    bind_host = args.host if args.host else str(server_cfg.get("listen_host", "0.0.0.0"))
    bind_port = args.port if args.port else int(server_cfg.get("listen_port", 8080))
    log.info(
        "Starting web_server on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )
    try:
        handle = start_web_server_in_thread(bind_host, bind_port, access_log=args.access_log, cfg=cfg)
    except RuntimeError as exc:
        log.error("%s", exc)
        return 1
    try:
        while handle.thread.is_alive():
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
