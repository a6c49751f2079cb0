from __future__ import annotations

import copy
import sys
import textwrap
from pathlib import Path

import pytest

from screenreel import config as config_module

FAKE_FFMPEG = textwrap.dedent(
    """
    import os, sys, time

    args = sys.argv[1:]
    if "-version" in args:
        if os.environ.get("FAKE_FFMPEG_INIT_FAIL"):
            sys.stderr.write("cannot load codecs\\n")
            sys.exit(1)
        print("ffmpeg version 6.1-fake")
        sys.exit(0)

    src = args[args.index("-i") + 1]
    if "-c:v" not in args:
        if os.environ.get("FAKE_FFMPEG_PROBE") == "unknown":
            sys.stderr.write("  Duration: N/A, start: 0.000000, bitrate: N/A\\n")
            sys.stderr.write("    Stream #0:0: Video: vp8, yuv420p, 3840x2160, SAR 1:1 DAR 16:9\\n")
        else:
            sys.stderr.write("  Duration: 00:01:40.00, start: 0.000000, bitrate: N/A\\n")
            sys.stderr.write("    Stream #0:0: Video: vp9, yuv420p(tv), 1920x1080, 30 fps, 30 tbr\\n")
        sys.stderr.write("At least one output file must be specified\\n")
        sys.exit(1)

    mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
    for frame in (750, 1500, 2250):
        sys.stderr.write("frame=%5d fps=120 q=28.0 size=    1024kB time=00:00:25.00\\r" % frame)
        sys.stderr.flush()
        if mode == "hang":
            time.sleep(30)
    if mode == "fail":
        sys.stderr.write("\\nError while encoding\\n")
        sys.exit(1)
    with open(src, "rb") as fh:
        data = fh.read()
    with open(args[-1], "wb") as fh:
        fh.write(b"MP4:" + data)
    sys.stderr.write("\\n")
    sys.exit(0)
    """
)


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> list[str]:
    script = tmp_path / "fake_ffmpeg.py"
    script.write_text(FAKE_FFMPEG)
    return [sys.executable, str(script)]


@pytest.fixture
def make_cfg(tmp_path: Path, fake_ffmpeg: list[str]):
    def _make(**sections):
        cfg = copy.deepcopy(config_module._DEFAULTS)
        cfg["paths"] = {
            "tmp_dir": str(tmp_path / "engine"),
            "recordings_dir": str(tmp_path / "recordings"),
            "exports_dir": str(tmp_path / "exports"),
        }
        cfg["engine"]["binary"] = list(fake_ffmpeg)
        cfg["engine"]["init_timeout_sec"] = 10.0
        for section, values in sections.items():
            cfg.setdefault(section, {}).update(values)
        return cfg

    return _make
