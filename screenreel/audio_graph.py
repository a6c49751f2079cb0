"""Pull-based audio node graph used to mix capture audio.

The graph mirrors the handful of node types the mixer needs: sources, gain,
dynamics compression (which doubles as the limiter), a peaking EQ, an
analyser tap and a single destination. Rendering is driven by the consumer:
``MixedStream.read(frames)`` asks the context for one block, the destination
pulls its inputs recursively, and every node caches its output per render so
fan-out (limiter -> destination + analyser) processes each node exactly once.

Samples are float32 mono in [-1.0, 1.0]; the destination converts to 16-bit
little-endian PCM.
"""
from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import List, Optional, Protocol

import numpy as np


class AudioSource(Protocol):
    """Live audio feeding a ``SourceNode``."""

    sample_rate: int

    def read(self, frames: int) -> np.ndarray: ...


class AudioContextClosedError(RuntimeError):
    pass


class AudioContext:
    """Owns a set of nodes and drives rendering."""

    def __init__(self, sample_rate: int = 48000, render_quantum: int = 128) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.sample_rate = int(sample_rate)
        self.render_quantum = max(1, int(render_quantum))
        self.state = "running"
        self.nodes: List[AudioNode] = []
        self.destination: Optional[DestinationNode] = None
        self._taps: List[AnalyserNode] = []
        self._render_id = 0
        self._lock = threading.RLock()

    def _register(self, node: "AudioNode") -> None:
        if self.state == "closed":
            raise AudioContextClosedError("audio context is closed")
        self.nodes.append(node)

    def create_source(self, source: AudioSource, name: str = "source") -> "SourceNode":
        return SourceNode(self, source, name=name)

    def create_gain(self, gain: float = 1.0, name: str = "gain") -> "GainNode":
        return GainNode(self, gain, name=name)

    def create_compressor(self, name: str = "compressor", **params: float) -> "DynamicsCompressorNode":
        return DynamicsCompressorNode(self, name=name, **params)

    def create_peaking_filter(
        self, frequency: float, q: float, gain_db: float, name: str = "peaking"
    ) -> "PeakingFilterNode":
        return PeakingFilterNode(self, frequency, q, gain_db, name=name)

    def create_analyser(
        self, fft_size: int = 2048, smoothing: float = 0.8, name: str = "analyser"
    ) -> "AnalyserNode":
        node = AnalyserNode(self, fft_size=fft_size, smoothing=smoothing, name=name)
        self._taps.append(node)
        return node

    def create_destination(self) -> "DestinationNode":
        if self.destination is not None:
            raise RuntimeError("audio context already has a destination")
        self.destination = DestinationNode(self)
        return self.destination

    def render(self, frames: int) -> np.ndarray:
        """Render ``frames`` samples through the destination."""
        with self._lock:
            if self.state == "closed":
                raise AudioContextClosedError("audio context is closed")
            if self.destination is None:
                raise RuntimeError("audio context has no destination")
            out = np.empty(0, dtype=np.float32)
            remaining = int(frames)
            blocks = []
            while remaining > 0:
                count = min(remaining, self.render_quantum)
                self._render_id += 1
                blocks.append(self.destination.pull(self._render_id, count))
                for tap in self._taps:
                    tap.pull(self._render_id, count)
                remaining -= count
            if blocks:
                out = np.concatenate(blocks)
            return out

    def close(self) -> None:
        with self._lock:
            if self.state == "closed":
                return
            self.state = "closed"
            self._taps.clear()
            self.nodes.clear()
            self.destination = None


class AudioNode:
    """Base node: sums its inputs and applies ``process``."""

    def __init__(self, context: AudioContext, name: str = "node") -> None:
        self.context = context
        self.name = name
        self.inputs: List[AudioNode] = []
        self.outputs: List[AudioNode] = []
        self._cache_id = -1
        self._cache = np.empty(0, dtype=np.float32)
        context._register(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    def connect(self, target: "AudioNode") -> "AudioNode":
        if target.context is not self.context:
            raise ValueError("cannot connect nodes from different audio contexts")
        if target not in self.outputs:
            self.outputs.append(target)
            target.inputs.append(self)
        return target

    def disconnect(self, target: Optional["AudioNode"] = None) -> None:
        """Detach from ``target`` (or from every output). Never raises."""
        targets = list(self.outputs) if target is None else [target]
        for node in targets:
            if node in self.outputs:
                self.outputs.remove(node)
            if self in node.inputs:
                node.inputs.remove(self)

    def pull(self, render_id: int, frames: int) -> np.ndarray:
        if render_id != self._cache_id:
            self._cache = self.process(self._mix_inputs(render_id, frames))
            self._cache_id = render_id
        return self._cache

    def _mix_inputs(self, render_id: int, frames: int) -> np.ndarray:
        mixed = np.zeros(frames, dtype=np.float32)
        for node in list(self.inputs):
            mixed += node.pull(render_id, frames)
        return mixed

    def process(self, data: np.ndarray) -> np.ndarray:
        return data


class SourceNode(AudioNode):
    def __init__(self, context: AudioContext, source: AudioSource, name: str = "source") -> None:
        super().__init__(context, name=name)
        self.source = source

    def _mix_inputs(self, render_id: int, frames: int) -> np.ndarray:
        src_rate = int(getattr(self.source, "sample_rate", self.context.sample_rate) or self.context.sample_rate)
        wanted = frames
        if src_rate != self.context.sample_rate:
            wanted = max(1, int(math.ceil(frames * src_rate / self.context.sample_rate)))
        data = np.asarray(self.source.read(wanted), dtype=np.float32)
        if data.ndim > 1:
            data = data.mean(axis=1).astype(np.float32)
        if data.size and src_rate != self.context.sample_rate:
            positions = np.linspace(0, data.size - 1, num=frames, dtype=np.float64)
            data = np.interp(positions, np.arange(data.size), data).astype(np.float32)
        if data.size < frames:
            data = np.concatenate([data, np.zeros(frames - data.size, dtype=np.float32)])
        return data[:frames]


class GainNode(AudioNode):
    def __init__(self, context: AudioContext, gain: float = 1.0, name: str = "gain") -> None:
        super().__init__(context, name=name)
        self.gain = float(gain)

    def process(self, data: np.ndarray) -> np.ndarray:
        return (data * self.gain).astype(np.float32, copy=False)


@dataclass
class _CompressorState:
    envelope_db: float = 0.0


class DynamicsCompressorNode(AudioNode):
    """Feed-forward compressor with a soft knee.

    The gain computer follows the usual quadratic knee around ``threshold``;
    the gain reduction is smoothed with separate attack and release time
    constants so transients are caught without pumping on the release.
    """

    def __init__(
        self,
        context: AudioContext,
        *,
        threshold: float = -24.0,
        knee: float = 30.0,
        ratio: float = 12.0,
        attack: float = 0.003,
        release: float = 0.25,
        name: str = "compressor",
    ) -> None:
        super().__init__(context, name=name)
        self.threshold = float(threshold)
        self.knee = max(0.0, float(knee))
        self.ratio = max(1.0, float(ratio))
        self.attack = max(1e-5, float(attack))
        self.release = max(1e-5, float(release))
        self.reduction = 0.0
        self._state = _CompressorState()

    def _static_gain_db(self, level_db: np.ndarray) -> np.ndarray:
        over = level_db - self.threshold
        slope = 1.0 / self.ratio - 1.0
        gain = np.zeros_like(level_db)
        if self.knee > 0:
            in_knee = np.abs(over) * 2.0 <= self.knee
            gain[in_knee] = slope * (over[in_knee] + self.knee / 2.0) ** 2 / (2.0 * self.knee)
            above = over * 2.0 > self.knee
        else:
            above = over > 0
        gain[above] = slope * over[above]
        return gain

    def process(self, data: np.ndarray) -> np.ndarray:
        if not data.size:
            return data
        level_db = 20.0 * np.log10(np.maximum(np.abs(data).astype(np.float64), 1e-6))
        target = self._static_gain_db(level_db)
        sr = float(self.context.sample_rate)
        attack_coeff = math.exp(-1.0 / (self.attack * sr))
        release_coeff = math.exp(-1.0 / (self.release * sr))
        smoothed = np.empty_like(target)
        env = self._state.envelope_db
        for idx in range(target.size):
            value = target[idx]
            # gains are <= 0 dB; a lower target means more reduction (attack)
            coeff = attack_coeff if value < env else release_coeff
            env = coeff * env + (1.0 - coeff) * value
            smoothed[idx] = env
        self._state.envelope_db = env
        self.reduction = float(env)
        return (data * np.power(10.0, smoothed / 20.0)).astype(np.float32)


@dataclass
class _BiquadState:
    x1: float = 0.0
    x2: float = 0.0
    y1: float = 0.0
    y2: float = 0.0


class PeakingFilterNode(AudioNode):
    """RBJ cookbook peaking EQ."""

    def __init__(
        self,
        context: AudioContext,
        frequency: float,
        q: float,
        gain_db: float,
        name: str = "peaking",
    ) -> None:
        super().__init__(context, name=name)
        self.frequency = float(frequency)
        self.q = float(q)
        self.gain_db = float(gain_db)
        self._state = _BiquadState()

    def coefficients(self) -> tuple[float, float, float, float, float]:
        sr = float(self.context.sample_rate)
        freq = max(1.0, min(self.frequency, sr / 2 - 1.0))
        q = max(0.1, self.q)
        amp = 10.0 ** (self.gain_db / 40.0)
        omega = 2.0 * math.pi * freq / sr
        alpha = math.sin(omega) / (2.0 * q)
        cos_omega = math.cos(omega)
        a0 = 1.0 + alpha / amp
        b0 = (1.0 + alpha * amp) / a0
        b1 = (-2.0 * cos_omega) / a0
        b2 = (1.0 - alpha * amp) / a0
        a1 = (-2.0 * cos_omega) / a0
        a2 = (1.0 - alpha / amp) / a0
        return b0, b1, b2, a1, a2

    def process(self, data: np.ndarray) -> np.ndarray:
        if not data.size:
            return data
        b0, b1, b2, a1, a2 = self.coefficients()
        st = self._state
        x1, x2, y1, y2 = st.x1, st.x2, st.y1, st.y2
        samples = data.astype(np.float64, copy=False)
        result = np.empty_like(samples)
        for idx in range(samples.size):
            x0 = samples[idx]
            y0 = b0 * x0 + b1 * x1 + b2 * x2 - a1 * y1 - a2 * y2
            result[idx] = y0
            x2, x1 = x1, x0
            y2, y1 = y1, y0
        st.x1, st.x2, st.y1, st.y2 = x1, x2, y1, y2
        return result.astype(np.float32)


class AnalyserNode(AudioNode):
    """Spectrum tap; passes audio through unchanged.

    ``get_byte_frequency_data`` returns ``fft_size // 2`` bins scaled to
    0..255 between ``min_decibels`` and ``max_decibels`` after Blackman
    windowing and exponential smoothing over time.
    """

    def __init__(
        self,
        context: AudioContext,
        *,
        fft_size: int = 2048,
        smoothing: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
        name: str = "analyser",
    ) -> None:
        super().__init__(context, name=name)
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a power of two >= 32")
        self.fft_size = int(fft_size)
        self.smoothing = min(max(float(smoothing), 0.0), 1.0)
        self.min_decibels = float(min_decibels)
        self.max_decibels = float(max_decibels)
        self._buffer = np.zeros(self.fft_size, dtype=np.float32)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)
        self._window = np.blackman(self.fft_size)
        self._lock = threading.Lock()

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def process(self, data: np.ndarray) -> np.ndarray:
        with self._lock:
            if data.size >= self.fft_size:
                self._buffer[:] = data[-self.fft_size:]
            elif data.size:
                self._buffer = np.roll(self._buffer, -data.size)
                self._buffer[-data.size:] = data
        return data

    def get_byte_frequency_data(self) -> np.ndarray:
        with self._lock:
            frame = self._buffer.astype(np.float64) * self._window
        spectrum = np.abs(np.fft.rfft(frame))[: self.frequency_bin_count] / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * spectrum
        db = 20.0 * np.log10(np.maximum(self._smoothed, 1e-12))
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = np.floor((db - self.min_decibels) * scale)
        return np.clip(scaled, 0, 255).astype(np.uint8)


class MixedStream:
    """Consumer side of the destination: 16-bit little-endian mono PCM."""

    channels = 1
    sample_width = 2

    def __init__(self, context: AudioContext) -> None:
        self._context = context

    @property
    def sample_rate(self) -> int:
        return self._context.sample_rate

    @property
    def closed(self) -> bool:
        return self._context.state == "closed"

    def read_float(self, frames: int) -> np.ndarray:
        if self.closed or frames <= 0:
            return np.empty(0, dtype=np.float32)
        try:
            return self._context.render(frames)
        except AudioContextClosedError:
            return np.empty(0, dtype=np.float32)

    def read(self, frames: int) -> bytes:
        data = self.read_float(frames)
        pcm = np.clip(np.rint(data * 32767.0), -32768, 32767).astype("<i2")
        return pcm.tobytes()


class DestinationNode(AudioNode):
    def __init__(self, context: AudioContext) -> None:
        super().__init__(context, name="destination")
        self.stream = MixedStream(context)
