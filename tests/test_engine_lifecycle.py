import asyncio
import sys
from pathlib import Path

import pytest

from screenreel.engine import EngineInitError, EngineLifecycleManager, EngineTerminatedError
from screenreel.ffmpeg_io import probe_args, transcode_args


def test_acquire_creates_private_workdir(make_cfg, tmp_path: Path):
    manager = EngineLifecycleManager(cfg=make_cfg())

    async def runner():
        first = await manager.acquire()
        second = await manager.acquire()
        try:
            assert first.workdir != second.workdir
            assert first.workdir.is_dir()
            assert first.workdir.parent == tmp_path / "engine"
            assert first.handle_id != second.handle_id
        finally:
            manager.release(first)
            manager.release(second)
        return first, second

    first, second = asyncio.run(runner())
    assert first.released and second.released
    assert not first.workdir.exists()
    assert not second.workdir.exists()


def test_acquire_fails_for_missing_binary(make_cfg, tmp_path: Path):
    cfg = make_cfg(engine={"binary": str(tmp_path / "no-such-ffmpeg")})
    manager = EngineLifecycleManager(cfg=cfg)

    with pytest.raises(EngineInitError):
        asyncio.run(manager.acquire())


def test_acquire_fails_when_engine_does_not_load(make_cfg, monkeypatch, tmp_path: Path):
    monkeypatch.setenv("FAKE_FFMPEG_INIT_FAIL", "1")
    manager = EngineLifecycleManager(cfg=make_cfg())

    with pytest.raises(EngineInitError):
        asyncio.run(manager.acquire())
    assert list((tmp_path / "engine").iterdir()) == []


def test_exec_streams_lines_and_ticks(make_cfg, monkeypatch):
    monkeypatch.delenv("FAKE_FFMPEG_MODE", raising=False)
    manager = EngineLifecycleManager(cfg=make_cfg())
    lines: list[str] = []
    ticks: list[int] = []

    async def runner():
        handle = await manager.acquire()
        handle.log_lines.subscribe(lines.append)
        handle.ticks.subscribe(lambda tick: ticks.append(tick.frame))
        try:
            await handle.write_file("input.webm", b"webm-bytes")
            probe_rc = await handle.exec(probe_args("input.webm"))
            rc = await handle.exec(transcode_args("input.webm", "output.mp4"))
            data = await handle.read_file("output.mp4")
            await handle.delete_file("output.mp4")
            await handle.delete_file("output.mp4")
        finally:
            manager.release(handle)
        return probe_rc, rc, data

    probe_rc, rc, data = asyncio.run(runner())

    assert probe_rc != 0
    assert rc == 0
    assert data == b"MP4:webm-bytes"
    assert ticks == [750, 1500, 2250]
    assert any(line.startswith("Duration: 00:01:40.00") for line in lines)


def test_terminate_kills_running_exec(make_cfg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
    manager = EngineLifecycleManager(cfg=make_cfg())

    async def runner():
        handle = await manager.acquire()
        await handle.write_file("input.webm", b"x")
        first_tick = asyncio.Event()
        handle.ticks.subscribe(lambda _tick: first_tick.set())
        task = asyncio.create_task(handle.exec(transcode_args("input.webm", "output.mp4")))
        await asyncio.wait_for(first_tick.wait(), timeout=10)
        loop = asyncio.get_running_loop()
        started = loop.time()
        manager.release(handle)
        with pytest.raises(EngineTerminatedError):
            await task
        elapsed = loop.time() - started
        with pytest.raises(EngineTerminatedError):
            await handle.exec(["-version"])
        return elapsed

    elapsed = asyncio.run(runner())
    assert elapsed < 5


def test_release_is_idempotent_and_none_safe(make_cfg):
    manager = EngineLifecycleManager(cfg=make_cfg())

    async def runner():
        return await manager.acquire()

    handle = asyncio.run(runner())
    manager.release(None)
    manager.release(handle)
    manager.release(handle)
    assert handle.released
    assert handle.terminated


def test_file_names_stay_inside_workdir(make_cfg):
    manager = EngineLifecycleManager(cfg=make_cfg())

    async def runner():
        handle = await manager.acquire()
        try:
            with pytest.raises(ValueError):
                await handle.write_file("../escape.bin", b"x")
        finally:
            manager.release(handle)

    asyncio.run(runner())


def test_binary_override_argument(tmp_path: Path, fake_ffmpeg):
    manager = EngineLifecycleManager(
        binary=fake_ffmpeg,
        tmp_dir=tmp_path / "alt",
        cfg={"paths": {"tmp_dir": str(tmp_path / "unused")}, "engine": {}},
    )

    async def runner():
        handle = await manager.acquire()
        manager.release(handle)
        return handle

    handle = asyncio.run(runner())
    assert handle.workdir.parent == tmp_path / "alt"
    assert handle.command[0] == sys.executable


def test_multibyte_character_split_across_reads(make_cfg):
    manager = EngineLifecycleManager(cfg=make_cfg())
    lines: list[str] = []

    async def runner():
        handle = await manager.acquire()
        handle.log_lines.subscribe(lines.append)
        reader = asyncio.StreamReader()
        reader.feed_data("title: caf".encode("utf-8") + b"\xc3")
        pump = asyncio.create_task(handle._pump_stderr(reader))
        for _ in range(3):
            await asyncio.sleep(0)
        reader.feed_data(b"\xa9 bar\rframe=   10 fps=5\n")
        reader.feed_eof()
        await asyncio.wait_for(pump, timeout=5)
        manager.release(handle)

    asyncio.run(runner())
    assert lines == ["title: café bar", "frame=   10 fps=5"]
