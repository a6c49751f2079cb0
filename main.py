#!/usr/bin/env python3
"""
Launcher for screenreel.

- `serve`      runs the HTTP control surface in the foreground (Ctrl-C exits)
- `transcode`  converts one captured file to MP4 with live progress
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from screenreel.config import log_level, reload_cfg
from screenreel.job_registry import JobRegistry
from screenreel.media import MediaSegment, base_mime_type
from screenreel.transcode_job import CancelReason, JobCancelledError
from screenreel.video_export import VideoExporter
from screenreel.web_server import cli_main as serve_main

_MIME_BY_SUFFIX = {
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".ogv": "video/ogg",
    ".ts": "video/mp2t",
}


async def transcode_file(source: Path, output: Path, *, use_engine: bool = True) -> int:
    cfg = reload_cfg()
    log = logging.getLogger("main")
    exporter = VideoExporter(JobRegistry(cfg=cfg), cfg=cfg)
    mime_type = base_mime_type(_MIME_BY_SUFFIX.get(source.suffix.lower(), "video/webm"))
    segments = [MediaSegment(source.read_bytes(), mime_type)]

    def _on_progress(ratio: float) -> None:
        sys.stderr.write(f"\rprogress: {ratio * 100:5.1f}%")
        sys.stderr.flush()

    def _on_cancelled(reason: CancelReason) -> None:
        sys.stderr.write(f"\ncancelled ({reason.value})\n")

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, exporter.cancel_processing)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        artifact = await exporter.create_mp4(segments, use_engine, _on_progress, _on_cancelled)
    except JobCancelledError as exc:
        log.error("%s", exc)
        return 130
    finally:
        sys.stderr.write("\n")

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(artifact.data)
    log.info("Wrote %s (%d bytes, %s)", output, len(artifact), artifact.outcome.value)
    return 0 if not artifact.fallback else 2


def main(argv=None):
    parser = argparse.ArgumentParser(description="screenreel launcher")
    sub = parser.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve", help="Run the HTTP server (remaining args go to the server).")
    serve.add_argument("server_args", nargs=argparse.REMAINDER)
    tc = sub.add_parser("transcode", help="Convert a captured file to MP4.")
    tc.add_argument("input", type=Path)
    tc.add_argument("-o", "--output", type=Path, help="Output path (default: <input>.mp4)")
    tc.add_argument("--no-engine", action="store_true", help="Only re-tag the input as MP4.")
    args = parser.parse_args(argv)

    if args.command == "serve":
        return serve_main(args.server_args)

    logging.basicConfig(
        level=log_level(reload_cfg()),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not args.input.is_file():
        logging.getLogger("main").error("No such file: %s", args.input)
        return 1
    output = args.output or args.input.with_suffix(".mp4")
    if output.resolve() == args.input.resolve():
        output = args.input.with_name(args.input.stem + ".converted.mp4")
    return asyncio.run(transcode_file(args.input, output, use_engine=not args.no_engine))


if __name__ == "__main__":
    raise SystemExit(main())
