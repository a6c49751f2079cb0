"""Directory-backed storage for captured recordings.

Layout::

    <root>/<recording_id>/meta.json
    <root>/<recording_id>/segment-00000.bin
    <root>/<recording_id>/segment-00001.bin
    ...

``meta.json`` carries the recording info and the ordered segment list with
each segment's declared MIME type. A recording is written into a hidden
staging directory first and renamed into place, so readers never observe a
half-written recording.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from screenreel.media import MediaSegment, as_segments, concat_segments, source_mime_type

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
_META_NAME = "meta.json"

log = logging.getLogger("recording_store")


class RecordingStoreError(Exception):
    pass


class RecordingNotFoundError(RecordingStoreError, KeyError):
    pass


class RecordingExistsError(RecordingStoreError):
    pass


def new_recording_id() -> str:
    return uuid.uuid4().hex


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class RecordingInfo:
    recording_id: str
    begin_time: str
    title: str
    mime_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.recording_id,
            "datetime": self.begin_time,
            "title": self.title,
            "mime_type": self.mime_type,
        }


@dataclass
class StoredRecording:
    info: RecordingInfo
    segments: list[MediaSegment] = field(default_factory=list)
    size_bytes: int = 0

    @property
    def recording_id(self) -> str:
        return self.info.recording_id

    @property
    def title(self) -> str:
        return self.info.title

    def data(self) -> bytes:
        return concat_segments(self.segments)

    def to_dict(self) -> dict[str, Any]:
        payload = self.info.to_dict()
        payload["size_bytes"] = self.size_bytes
        payload["segment_count"] = len(self.segments) if self.segments else None
        return payload


class RecordingStore(Protocol):
    def save(self, segments: Iterable[MediaSegment | bytes], info: RecordingInfo) -> StoredRecording: ...

    def get(self, recording_id: str) -> Optional[StoredRecording]: ...

    def get_all(self, include_segments: bool = False) -> list[StoredRecording]: ...

    def remove(self, recording_id: str) -> None: ...


def _write_json_atomic(destination: Path, payload: dict[str, Any]) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_suffix(destination.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, separators=(",", ":"))
        handle.write("\n")
    os.replace(tmp_path, destination)


def _validate_id(recording_id: str) -> str:
    value = str(recording_id or "")
    if not _ID_RE.match(value):
        raise ValueError(f"invalid recording id: {recording_id!r}")
    return value


def _segment_path(directory: Path, entry: Any) -> Path:
    name = entry.get("file") if isinstance(entry, dict) else None
    if not isinstance(name, str) or not name or "/" in name or "\\" in name or name in {".", ".."}:
        raise ValueError(f"invalid segment entry: {entry!r}")
    return directory / name


class DirectoryRecordingStore:
    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)

    def _dir(self, recording_id: str) -> Path:
        return self.root / _validate_id(recording_id)

    def save(self, segments: Iterable[MediaSegment | bytes], info: RecordingInfo) -> StoredRecording:
        items = as_segments(segments, info.mime_type)
        if not info.mime_type:
            info = RecordingInfo(info.recording_id, info.begin_time, info.title, source_mime_type(items))
        final_dir = self._dir(info.recording_id)
        if final_dir.exists():
            raise RecordingExistsError(f"recording {info.recording_id} already exists")

        self.root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{info.recording_id}-", dir=str(self.root)))
        try:
            entries = []
            for index, segment in enumerate(items):
                name = f"segment-{index:05d}.bin"
                (staging / name).write_bytes(segment.data)
                entries.append({"file": name, "mime_type": segment.mime_type, "size": len(segment.data)})
            payload = info.to_dict()
            payload["segments"] = entries
            _write_json_atomic(staging / _META_NAME, payload)
            os.replace(staging, final_dir)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        size = sum(len(s) for s in items)
        log.info("Saved recording %s (%d segments, %d bytes)", info.recording_id, len(items), size)
        return StoredRecording(info, items, size)

    def _load(self, directory: Path, include_segments: bool) -> Optional[StoredRecording]:
        meta_path = directory / _META_NAME
        try:
            with meta_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Skipping unreadable recording metadata %s: %s", meta_path, exc)
            return None
        if not isinstance(payload, dict):
            return None

        info = RecordingInfo(
            recording_id=str(payload.get("id") or directory.name),
            begin_time=str(payload.get("datetime") or ""),
            title=str(payload.get("title") or ""),
            mime_type=str(payload.get("mime_type") or ""),
        )
        entries = payload.get("segments") or []
        if not isinstance(entries, list):
            log.warning("Skipping recording metadata %s without a segment list", meta_path)
            return None
        try:
            size = sum(int(entry.get("size", 0)) for entry in entries if isinstance(entry, dict))
        except (TypeError, ValueError):
            size = 0
        segments: list[MediaSegment] = []
        if include_segments:
            try:
                for entry in entries:
                    path = _segment_path(directory, entry)
                    segments.append(MediaSegment(path.read_bytes(), str(entry.get("mime_type") or "")))
            except (OSError, ValueError) as exc:
                log.warning("Skipping recording %s with unreadable segments: %s", directory.name, exc)
                return None
        return StoredRecording(info, segments, size)

    def get(self, recording_id: str) -> Optional[StoredRecording]:
        try:
            directory = self._dir(recording_id)
        except ValueError:
            return None
        return self._load(directory, include_segments=True)

    def get_all(self, include_segments: bool = False) -> list[StoredRecording]:
        if not self.root.exists():
            return []
        recordings = []
        for entry in self.root.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            loaded = self._load(entry, include_segments)
            if loaded is not None:
                recordings.append(loaded)
        recordings.sort(key=lambda rec: rec.info.begin_time, reverse=True)
        return recordings

    def remove(self, recording_id: str) -> None:
        try:
            directory = self._dir(recording_id)
        except ValueError as exc:
            raise RecordingNotFoundError(recording_id) from exc
        if not (directory / _META_NAME).exists():
            raise RecordingNotFoundError(recording_id)
        shutil.rmtree(directory)
        log.info("Removed recording %s", recording_id)
