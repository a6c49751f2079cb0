import math

import numpy as np
import pytest

from screenreel.audio_graph import AudioContext, AudioContextClosedError


class ToneSource:
    def __init__(self, freq: float, amplitude: float, sample_rate: int = 48000):
        self.freq = freq
        self.amplitude = amplitude
        self.sample_rate = sample_rate
        self._pos = 0

    def read(self, frames: int) -> np.ndarray:
        idx = np.arange(self._pos, self._pos + frames)
        self._pos += frames
        return (self.amplitude * np.sin(2 * math.pi * self.freq * idx / self.sample_rate)).astype(np.float32)


class ShortSource:
    sample_rate = 48000

    def read(self, frames: int) -> np.ndarray:
        return np.full(max(0, frames // 2), 0.25, dtype=np.float32)


def _rms(data: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.square(data.astype(np.float64)))))


def test_gain_and_summing_junction():
    ctx = AudioContext(sample_rate=48000, render_quantum=128)
    a = ctx.create_source(ToneSource(440, 0.1))
    b = ctx.create_source(ToneSource(440, 0.1))
    gain = ctx.create_gain(2.0)
    dest = ctx.create_destination()
    a.connect(gain)
    b.connect(gain)
    gain.connect(dest)

    out = dest.stream.read_float(480)

    assert out.shape == (480,)
    assert _rms(out) == pytest.approx(0.4 / math.sqrt(2), rel=0.05)


def test_short_source_is_zero_padded():
    ctx = AudioContext()
    src = ctx.create_source(ShortSource())
    dest = ctx.create_destination()
    src.connect(dest)

    out = dest.stream.read_float(128)

    assert np.allclose(out[:64], 0.25)
    assert np.allclose(out[64:], 0.0)


def test_only_one_destination():
    ctx = AudioContext()
    ctx.create_destination()
    with pytest.raises(RuntimeError):
        ctx.create_destination()


def test_disconnect_twice_does_not_raise():
    ctx = AudioContext()
    gain = ctx.create_gain()
    dest = ctx.create_destination()
    gain.connect(dest)

    gain.disconnect()
    gain.disconnect()
    gain.disconnect(dest)
    assert gain.outputs == []
    assert dest.inputs == []


def test_cross_context_connect_rejected():
    a = AudioContext().create_gain()
    b = AudioContext().create_gain()
    with pytest.raises(ValueError):
        a.connect(b)


def test_limiter_holds_hot_signal_down():
    ctx = AudioContext()
    src = ctx.create_source(ToneSource(1000, 1.0))
    limiter = ctx.create_compressor(threshold=-3.0, knee=0.0, ratio=20.0, attack=0.001, release=0.1)
    dest = ctx.create_destination()
    src.connect(limiter)
    limiter.connect(dest)

    out = dest.stream.read_float(4800)

    settled = out[2400:]
    assert np.max(np.abs(settled)) < 0.8
    assert limiter.reduction < -1.0


def test_compressor_leaves_quiet_signal_alone():
    ctx = AudioContext()
    src = ctx.create_source(ToneSource(1000, 0.01))
    comp = ctx.create_compressor(threshold=-15.0, knee=10.0, ratio=7.0, attack=0.001, release=0.1)
    dest = ctx.create_destination()
    src.connect(comp)
    comp.connect(dest)

    out = dest.stream.read_float(2400)

    assert _rms(out) == pytest.approx(0.01 / math.sqrt(2), rel=0.02)


def test_peaking_filter_boosts_centre_frequency():
    def _gain_at(freq: float) -> float:
        ctx = AudioContext()
        src = ctx.create_source(ToneSource(freq, 0.1))
        eq = ctx.create_peaking_filter(2500.0, 1.0, 6.0)
        dest = ctx.create_destination()
        src.connect(eq)
        eq.connect(dest)
        out = dest.stream.read_float(9600)
        return _rms(out[4800:]) / (0.1 / math.sqrt(2))

    assert 20 * math.log10(_gain_at(2500.0)) == pytest.approx(6.0, abs=0.5)
    assert 20 * math.log10(_gain_at(100.0)) == pytest.approx(0.0, abs=0.5)


def test_analyser_byte_frequency_data():
    ctx = AudioContext()
    src = ctx.create_source(ToneSource(3000, 0.5))
    analyser = ctx.create_analyser(fft_size=2048, smoothing=0.0)
    dest = ctx.create_destination()
    src.connect(dest)
    src.connect(analyser)

    silent = analyser.get_byte_frequency_data()
    dest.stream.read_float(4096)
    loud = analyser.get_byte_frequency_data()

    assert silent.shape == (1024,)
    assert silent.max() == 0
    peak_bin = int(np.argmax(loud))
    assert abs(peak_bin - round(3000 / (48000 / 2048))) <= 1
    assert loud[peak_bin] == 255


def test_stream_pcm_and_close():
    ctx = AudioContext()
    src = ctx.create_source(ShortSource())
    dest = ctx.create_destination()
    src.connect(dest)

    pcm = dest.stream.read(128)
    assert len(pcm) == 256
    assert np.frombuffer(pcm, dtype="<i2")[0] == round(0.25 * 32767)

    ctx.close()
    assert dest.stream.closed
    assert dest.stream.read(128) == b""
    with pytest.raises(AudioContextClosedError):
        ctx.create_gain()
