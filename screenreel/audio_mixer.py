"""
Two-source capture audio mixer.

System audio and the microphone each get their own gain and compressor so
one source's loudness never drives the other's gain reduction; both meet at a
shared limiter in front of the destination. A monitor thread watches the
analyser tap and nudges the gains when the mix is too quiet or too hot.

One ``AudioMixer`` belongs to one recording session. ``build_mix`` always
tears the previous graph down first, so two live contexts never coexist.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional

import numpy as np

from screenreel.audio_graph import (
    AnalyserNode,
    AudioContext,
    AudioNode,
    AudioSource,
    DynamicsCompressorNode,
    GainNode,
    MixedStream,
    PeakingFilterNode,
    SourceNode,
)
from screenreel.config import get_cfg


def _compressor_params(block: Mapping[str, Any]) -> Dict[str, float]:
    return {
        "threshold": float(block.get("threshold_db", -24.0)),
        "knee": float(block.get("knee_db", 30.0)),
        "ratio": float(block.get("ratio", 12.0)),
        "attack": float(block.get("attack_sec", 0.003)),
        "release": float(block.get("release_sec", 0.25)),
    }


class AudioMixer:
    def __init__(
        self,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        context_factory: Optional[Callable[..., AudioContext]] = None,
    ) -> None:
        full_cfg = cfg if cfg is not None else get_cfg()
        self.cfg: Dict[str, Any] = dict(full_cfg.get("mixer", {}))
        self._context_factory = context_factory or AudioContext
        self._log = logging.getLogger("audio_mixer")

        self.context: Optional[AudioContext] = None
        self.stream: Optional[MixedStream] = None
        self.system_source: Optional[SourceNode] = None
        self.mic_source: Optional[SourceNode] = None
        self.system_gain: Optional[GainNode] = None
        self.mic_gain: Optional[GainNode] = None
        self.system_compressor: Optional[DynamicsCompressorNode] = None
        self.mic_presence_compressor: Optional[DynamicsCompressorNode] = None
        self.mic_compressor: Optional[DynamicsCompressorNode] = None
        self.presence_filter: Optional[PeakingFilterNode] = None
        self.limiter: Optional[DynamicsCompressorNode] = None
        self.analyser: Optional[AnalyserNode] = None

        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()
        self._monitor_count = 0

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    def build_mix(
        self,
        system_source: Optional[AudioSource] = None,
        mic_source: Optional[AudioSource] = None,
    ) -> Optional[MixedStream]:
        self.cleanup()
        if system_source is None and mic_source is None:
            self._log.warning("No audio sources available to mix")
            return None

        cfg = self.cfg
        try:
            ctx = self._context_factory(
                sample_rate=int(cfg.get("sample_rate", 48000)),
                render_quantum=int(cfg.get("render_quantum", 128)),
            )
            self.context = ctx

            limiter = ctx.create_compressor(name="limiter", **_compressor_params(cfg.get("limiter", {})))
            self.limiter = limiter

            if mic_source is not None:
                self.mic_source = ctx.create_source(mic_source, name="mic")
                self.mic_gain = ctx.create_gain(float(cfg.get("mic_gain", 2.8)), name="mic_gain")
                self.mic_presence_compressor = ctx.create_compressor(
                    name="mic_presence", **_compressor_params(cfg.get("mic_presence_compressor", {}))
                )
                presence = cfg.get("presence_filter", {})
                self.presence_filter = ctx.create_peaking_filter(
                    float(presence.get("frequency_hz", 2500.0)),
                    float(presence.get("q", 1.0)),
                    float(presence.get("gain_db", 6.0)),
                    name="mic_presence_eq",
                )
                self.mic_compressor = ctx.create_compressor(
                    name="mic_compressor", **_compressor_params(cfg.get("mic_compressor", {}))
                )
                self._chain(
                    self.mic_source,
                    self.mic_gain,
                    self.mic_presence_compressor,
                    self.presence_filter,
                    self.mic_compressor,
                    limiter,
                )
                self._log.info("Microphone path connected (gain %.2f)", self.mic_gain.gain)

            if system_source is not None:
                self.system_source = ctx.create_source(system_source, name="system")
                self.system_gain = ctx.create_gain(float(cfg.get("system_gain", 1.5)), name="system_gain")
                self.system_compressor = ctx.create_compressor(
                    name="system_compressor", **_compressor_params(cfg.get("system_compressor", {}))
                )
                self._chain(self.system_source, self.system_gain, self.system_compressor, limiter)
                self._log.info("System audio path connected (gain %.2f)", self.system_gain.gain)

            destination = ctx.create_destination()
            limiter.connect(destination)
            analyser_cfg = cfg.get("analyser", {})
            self.analyser = ctx.create_analyser(
                fft_size=int(analyser_cfg.get("fft_size", 2048)),
                smoothing=float(analyser_cfg.get("smoothing", 0.8)),
            )
            limiter.connect(self.analyser)
            self.stream = destination.stream
        except Exception as exc:  # noqa: BLE001 - a failed mix yields no stream
            self._log.error("Error creating audio mix: %s", exc)
            self.cleanup()
            return None

        self._start_monitor()
        return self.stream

    @staticmethod
    def _chain(*nodes: AudioNode) -> None:
        for upstream, downstream in zip(nodes, nodes[1:]):
            upstream.connect(downstream)

    # ------------------------------------------------------------------
    # Level monitor
    # ------------------------------------------------------------------
    def _start_monitor(self) -> None:
        self._monitor_stop.clear()
        self._monitor_count = 0
        t = threading.Thread(target=self._monitor_loop, name="audio_mixer_monitor", daemon=True)
        self._monitor_thread = t
        t.start()

    def _monitor_loop(self) -> None:
        interval = float(self.cfg.get("monitor_interval_sec", 1.0 / 60.0))
        while not self._monitor_stop.wait(interval):
            ctx = self.context
            if ctx is None or ctx.state != "running":
                break
            try:
                self.check_levels()
            except Exception:  # noqa: BLE001 - keep monitoring while the context lives
                self._log.exception("Audio level check failed")

    def check_levels(self) -> Optional[float]:
        """Run one monitor step; returns the mean level when it was evaluated."""
        analyser = self.analyser
        if analyser is None:
            return None
        data = analyser.get_byte_frequency_data()
        self._monitor_count += 1
        every = max(1, int(self.cfg.get("monitor_every", 50)))
        if self._monitor_count % every:
            return None

        average = float(np.mean(data)) if data.size else 0.0
        self._log.debug("Audio level: %.2f", average)

        cfg = self.cfg
        mic_gain, system_gain = self.mic_gain, self.system_gain
        if average < float(cfg.get("low_level", 10.0)) and mic_gain is not None and system_gain is not None:
            mic_gain.gain = min(mic_gain.gain * float(cfg.get("mic_gain_step", 1.1)), float(cfg.get("mic_gain_max", 4.0)))
            system_gain.gain = min(
                system_gain.gain * float(cfg.get("system_gain_step_up", 1.05)),
                float(cfg.get("system_gain_max", 2.5)),
            )
            self._log.info("Boosting low audio: mic=%.2f system=%.2f", mic_gain.gain, system_gain.gain)
        elif average > float(cfg.get("high_level", 100.0)) and system_gain is not None:
            system_gain.gain = max(
                system_gain.gain * float(cfg.get("system_gain_step_down", 0.95)),
                float(cfg.get("system_gain_min", 0.5)),
            )
            self._log.info("Reducing hot audio: system=%.2f", system_gain.gain)
        return average

    def _stop_monitor(self) -> None:
        self._monitor_stop.set()
        t = self._monitor_thread
        self._monitor_thread = None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _nodes(self) -> list[Optional[AudioNode]]:
        return [
            self.system_source,
            self.mic_source,
            self.system_gain,
            self.mic_gain,
            self.system_compressor,
            self.mic_presence_compressor,
            self.presence_filter,
            self.mic_compressor,
            self.limiter,
            self.analyser,
        ]

    def cleanup(self) -> None:
        self._stop_monitor()
        for node in self._nodes():
            if node is None:
                continue
            try:
                node.disconnect()
            except Exception as exc:  # noqa: BLE001
                self._log.debug("Ignoring disconnect error on %r: %s", node, exc)

        ctx = self.context
        if ctx is not None:
            try:
                ctx.close()
            except Exception as exc:  # noqa: BLE001
                self._log.warning("Error closing audio context: %s", exc)

        self.context = None
        self.stream = None
        self.system_source = None
        self.mic_source = None
        self.system_gain = None
        self.mic_gain = None
        self.system_compressor = None
        self.mic_presence_compressor = None
        self.presence_filter = None
        self.mic_compressor = None
        self.limiter = None
        self.analyser = None
