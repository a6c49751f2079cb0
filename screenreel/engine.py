"""
Encoding engine lifecycle.

Each ``EngineHandle`` is one private ffmpeg execution context: a scratch
directory standing in for the engine's file system plus at most one running
ffmpeg child process. Handles are never pooled; ``EngineLifecycleManager``
creates them and guarantees they can be torn down unconditionally, because a
child process can always be killed regardless of what it is doing.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from screenreel.channels import Channel
from screenreel.config import get_cfg
from screenreel.ffmpeg_io import engine_command, version_args

_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_READ_CHUNK = 4096


class EngineInitError(RuntimeError):
    """Raised when an engine instance cannot be created or loaded."""


class EngineTerminatedError(RuntimeError):
    """Raised when a terminated or released engine handle is used."""


@dataclass(frozen=True)
class EngineTick:
    """Periodic progress notification emitted for every ffmpeg stats line."""

    frame: int | None
    line: str


class EngineHandle:
    """One exclusive engine instance.

    ``terminate()`` is the single forced-stop capability: it kills the running
    child process (if any) without waiting for ffmpeg to wind down, and makes
    every later operation on the handle raise ``EngineTerminatedError``.
    """

    def __init__(self, command: Sequence[str], workdir: Path, *, handle_id: int) -> None:
        self.command = list(command)
        self.workdir = Path(workdir)
        self.handle_id = handle_id
        self.log_lines: Channel[str] = Channel("engine.log_lines")
        self.ticks: Channel[EngineTick] = Channel("engine.ticks")
        self._process: asyncio.subprocess.Process | None = None
        self._terminated = False
        self._released = False
        self._log = logging.getLogger("engine")

    def __repr__(self) -> str:
        return f"<EngineHandle #{self.handle_id} workdir={self.workdir}>"

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def released(self) -> bool:
        return self._released

    @property
    def running(self) -> bool:
        proc = self._process
        return proc is not None and proc.returncode is None

    def _ensure_usable(self) -> None:
        if self._released:
            raise EngineTerminatedError(f"engine #{self.handle_id} has been released")
        if self._terminated:
            raise EngineTerminatedError(f"engine #{self.handle_id} has been terminated")

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            raise ValueError(f"invalid engine file name: {name!r}")
        return self.workdir / name

    async def write_file(self, name: str, data: bytes) -> None:
        self._ensure_usable()
        await asyncio.to_thread(self._path(name).write_bytes, data)

    async def read_file(self, name: str) -> bytes:
        self._ensure_usable()
        return await asyncio.to_thread(self._path(name).read_bytes)

    async def delete_file(self, name: str) -> None:
        self._ensure_usable()
        await asyncio.to_thread(self._path(name).unlink, True)

    async def exec(self, args: Sequence[str]) -> int:
        """Run one engine invocation and return its exit code.

        stderr is streamed line by line into ``log_lines``; stats lines also
        produce a tick. A non-zero exit code is returned, not raised; callers
        decide whether it is fatal (the pre-analysis pass expects one).
        """
        self._ensure_usable()
        if self._process is not None:
            raise RuntimeError(f"engine #{self.handle_id} is already executing")

        cmd = [*self.command, *[str(arg) for arg in args]]
        self._log.debug("engine #%s exec: %s", self.handle_id, " ".join(cmd))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(self.workdir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        try:
            if self._terminated:
                # terminate() raced with the spawn above
                self._kill(process)
            if process.stderr is not None:
                await self._pump_stderr(process.stderr)
            returncode = await process.wait()
        finally:
            self._process = None

        if self._terminated:
            raise EngineTerminatedError(
                f"engine #{self.handle_id} terminated during exec (rc={returncode})"
            )
        return returncode

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        # ffmpeg rewrites its stats line in place with '\r', so both '\r' and
        # '\n' terminate a diagnostic line. Characters may straddle two reads.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                pending += decoder.decode(b"", final=True)
                break
            pending += decoder.decode(chunk)
            parts = re.split(r"[\r\n]", pending)
            pending = parts.pop()
            for part in parts:
                self._dispatch_line(part)
        if pending:
            self._dispatch_line(pending)

    def _dispatch_line(self, raw: str) -> None:
        line = raw.strip()
        if not line:
            return
        self._log.debug("engine #%s: %s", self.handle_id, line)
        self.log_lines.emit(line)
        match = _FRAME_RE.search(line)
        if match is not None:
            self.ticks.emit(EngineTick(frame=int(match.group(1)), line=line))

    def _kill(self, process: asyncio.subprocess.Process) -> bool:
        if process.returncode is not None:
            return False
        try:
            process.kill()
        except ProcessLookupError:
            return False
        return True

    def terminate(self) -> bool:
        """Force-stop the engine. Returns True when a live process was killed."""
        self._terminated = True
        process = self._process
        if process is None:
            return False
        killed = self._kill(process)
        if killed:
            self._log.info("engine #%s process killed", self.handle_id)
        return killed


class EngineLifecycleManager:
    """Creates and tears down ``EngineHandle`` instances."""

    def __init__(
        self,
        binary: str | Sequence[str] | None = None,
        *,
        tmp_dir: str | Path | None = None,
        init_timeout: float | None = None,
        cfg: Optional[Mapping[str, Any]] = None,
    ) -> None:
        cfg = cfg if cfg is not None else get_cfg()
        engine_cfg = cfg.get("engine", {})
        self.binary = binary if binary is not None else engine_cfg.get("binary", "ffmpeg")
        self.tmp_dir = Path(tmp_dir if tmp_dir is not None else cfg["paths"]["tmp_dir"])
        self.init_timeout = float(
            init_timeout if init_timeout is not None else engine_cfg.get("init_timeout_sec", 15.0)
        )
        self._next_id = 1
        self._log = logging.getLogger("engine")

    def _resolve_command(self) -> list[str]:
        try:
            command = engine_command(self.binary)
        except ValueError as exc:
            raise EngineInitError(str(exc)) from exc
        executable = command[0]
        if shutil.which(executable) is None and not Path(executable).is_file():
            raise EngineInitError(f"engine executable not found: {executable}")
        return command

    async def acquire(self) -> EngineHandle:
        command = self._resolve_command()
        try:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
            workdir = Path(tempfile.mkdtemp(prefix="engine-", dir=str(self.tmp_dir)))
        except OSError as exc:
            raise EngineInitError(f"unable to create engine workdir: {exc}") from exc

        handle_id = self._next_id
        self._next_id += 1
        try:
            await self._load(command)
        except BaseException:
            shutil.rmtree(workdir, ignore_errors=True)
            raise
        self._log.info("Engine instance #%s created and loaded (%s)", handle_id, workdir)
        return EngineHandle(command, workdir, handle_id=handle_id)

    async def _load(self, command: Sequence[str]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                *version_args(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EngineInitError(f"unable to launch engine: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.init_timeout)
        except asyncio.TimeoutError as exc:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise EngineInitError(
                f"engine did not initialise within {self.init_timeout:.1f}s"
            ) from exc

        if process.returncode != 0:
            detail = (stderr or stdout or b"").decode("utf-8", errors="ignore").strip()
            raise EngineInitError(
                f"engine failed to initialise (rc={process.returncode}): {detail[-200:]}"
            )

    def release(self, handle: Optional[EngineHandle]) -> None:
        """Free the handle's execution context; never raises.

        Safe on handles in any state; a second release is a no-op.
        """
        if handle is None or handle.released:
            return
        handle._released = True
        try:
            handle.terminate()
        except Exception as exc:  # noqa: BLE001 - a leak is preferable to a crash
            self._log.error("Failed to terminate engine #%s: %r", handle.handle_id, exc)
        handle.log_lines.clear()
        handle.ticks.clear()
        shutil.rmtree(handle.workdir, ignore_errors=True)
        self._log.info("Engine instance #%s released", handle.handle_id)
