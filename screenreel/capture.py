"""
Recording session around a capture device.

The device itself (screen grabber, microphone, container muxer) is a black box
behind ``CaptureDevice``: it hands out live audio sources and, once started,
delivers ordered media segments. ``RecordingSession`` wires the audio through
its own ``AudioMixer`` when both system audio and a microphone are present,
collects the segments, and persists them on stop.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence, Union

from screenreel.audio_graph import AudioSource, MixedStream
from screenreel.audio_mixer import AudioMixer
from screenreel.channels import Channel
from screenreel.media import DEFAULT_SOURCE_MIME, MediaSegment
from screenreel.recording_store import (
    RecordingInfo,
    RecordingStore,
    StoredRecording,
    new_recording_id,
    now_iso,
)

log = logging.getLogger("capture")

AudioTrack = Union[AudioSource, MixedStream]


@dataclass(frozen=True)
class AudioDeviceOption:
    device_id: str
    label: str
    kind: str = "audioinput"
    group_id: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"device_id": self.device_id, "label": self.label, "kind": self.kind, "group_id": self.group_id}


@dataclass(frozen=True)
class CaptureResult:
    segments: List[MediaSegment]
    info: RecordingInfo


class CaptureDevice(Protocol):
    mime_type: str

    def audio_inputs(self) -> List[AudioDeviceOption]: ...

    def open_system_audio(self) -> Optional[AudioSource]: ...

    def open_microphone(self, device_id: str) -> AudioSource: ...

    def start(self, audio_tracks: Sequence[AudioTrack], on_segment: Callable[[MediaSegment], None]) -> None: ...

    def stop(self) -> None: ...


class CaptureEvents:
    def __init__(self) -> None:
        self.data_available: Channel[MediaSegment] = Channel("capture.data_available")
        self.recording_stopped: Channel[CaptureResult] = Channel("capture.recording_stopped")
        self.error: Channel[str] = Channel("capture.error")
        self.devices_available: Channel[List[AudioDeviceOption]] = Channel("capture.devices_available")

    def clear(self) -> None:
        for channel in (self.data_available, self.recording_stopped, self.error, self.devices_available):
            channel.clear()


class RecordingSession:
    """One capture session; owns its mixer for its whole lifetime."""

    def __init__(
        self,
        device: CaptureDevice,
        store: Optional[RecordingStore] = None,
        *,
        mixer: Optional[AudioMixer] = None,
        cfg: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.device = device
        self.store = store
        self.mixer = mixer or AudioMixer(cfg)
        self.events = CaptureEvents()
        self.selected_audio_device: Optional[str] = None
        self.info: Optional[RecordingInfo] = None
        self.mixed = False
        self._segments: List[MediaSegment] = []
        self._recording = False

    @property
    def recording(self) -> bool:
        return self._recording

    @property
    def segments(self) -> List[MediaSegment]:
        return list(self._segments)

    def refresh_devices(self) -> List[AudioDeviceOption]:
        try:
            devices = list(self.device.audio_inputs())
        except Exception as exc:  # noqa: BLE001 - surfaced through the error channel
            self.events.error.emit(f"Failed to get audio devices: {exc}")
            return []
        self.events.devices_available.emit(devices)
        return devices

    def select_audio_device(self, device_id: Optional[str]) -> None:
        self.selected_audio_device = device_id or None
        log.info("Selected audio device: %s", device_id)

    def _open_audio(self) -> tuple[Optional[AudioSource], Optional[AudioSource]]:
        try:
            system = self.device.open_system_audio()
        except Exception as exc:
            raise RuntimeError(f"Screen capture failed: {exc}") from exc

        mic = None
        if self.selected_audio_device:
            try:
                mic = self.device.open_microphone(self.selected_audio_device)
            except Exception as exc:  # noqa: BLE001 - record without the microphone
                log.warning("Microphone access failed, continuing with display only: %s", exc)
        return system, mic

    def _audio_tracks(self, system: Optional[AudioSource], mic: Optional[AudioSource]) -> List[AudioTrack]:
        self.mixed = False
        if system is not None and mic is not None:
            stream = self.mixer.build_mix(system, mic)
            if stream is not None:
                self.mixed = True
                log.info("Recording with mixed system + microphone audio")
                return [stream]
            log.warning("Audio mixing failed, falling back to separate tracks")
        return [track for track in (system, mic) if track is not None]

    def start(self, title: str = "", *, recording_id: Optional[str] = None) -> RecordingInfo:
        if self._recording:
            raise RuntimeError("recording already in progress")
        self._segments = []
        self.mixer.cleanup()
        info = RecordingInfo(
            recording_id=recording_id or new_recording_id(),
            begin_time=now_iso(),
            title=title or "recording",
            mime_type=getattr(self.device, "mime_type", "") or DEFAULT_SOURCE_MIME,
        )
        try:
            system, mic = self._open_audio()
            tracks = self._audio_tracks(system, mic)
            self.device.start(tracks, self._on_segment)
        except Exception as exc:
            self.mixer.cleanup()
            self.events.error.emit(f"Failed to start recording: {exc}")
            raise
        self.info = info
        self._recording = True
        log.info("Recording %s started with %d audio track(s)", info.recording_id, len(tracks))
        return info

    def _on_segment(self, segment: MediaSegment) -> None:
        if not segment.data:
            return
        self._segments.append(segment)
        self.events.data_available.emit(segment)

    def stop(self) -> Optional[StoredRecording]:
        """Stop capturing, publish the result and persist it when a store is set."""
        if not self._recording or self.info is None:
            return None
        try:
            self.device.stop()
        except Exception as exc:
            self.events.error.emit(f"Failed to stop recording: {exc}")
            raise
        finally:
            self._recording = False
            self.mixer.cleanup()

        result = CaptureResult(list(self._segments), self.info)
        self.events.recording_stopped.emit(result)
        if self.store is None:
            return None
        try:
            return self.store.save(result.segments, result.info)
        except Exception as exc:
            self.events.error.emit(f"Failed to save recording: {exc}")
            raise

    def close(self) -> None:
        if self._recording:
            try:
                self.device.stop()
            except Exception as exc:  # noqa: BLE001
                log.warning("Error stopping capture device during close: %s", exc)
            self._recording = False
        self.mixer.cleanup()
        self.events.clear()
