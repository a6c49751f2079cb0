import copy
import math

import numpy as np
import pytest

from screenreel import config as config_module
from screenreel.audio_graph import AudioContext
from screenreel.audio_mixer import AudioMixer


class ToneSource:
    sample_rate = 48000

    def __init__(self, freq: float = 440.0, amplitude: float = 0.2):
        self.freq = freq
        self.amplitude = amplitude
        self._pos = 0

    def read(self, frames: int) -> np.ndarray:
        idx = np.arange(self._pos, self._pos + frames)
        self._pos += frames
        return (self.amplitude * np.sin(2 * math.pi * self.freq * idx / self.sample_rate)).astype(np.float32)


class CountingContextFactory:
    def __init__(self):
        self.contexts: list[AudioContext] = []

    def __call__(self, **kwargs):
        ctx = AudioContext(**kwargs)
        self.contexts.append(ctx)
        return ctx


def _cfg(**mixer_overrides):
    cfg = copy.deepcopy(config_module._DEFAULTS)
    # keep the background monitor idle; tests drive check_levels() directly
    cfg["mixer"]["monitor_interval_sec"] = 3600.0
    cfg["mixer"].update(mixer_overrides)
    return cfg


@pytest.fixture
def mixer_factory():
    created: list[AudioMixer] = []

    def _make(cfg=None, factory=None):
        mixer = AudioMixer(cfg or _cfg(), context_factory=factory)
        created.append(mixer)
        return mixer

    yield _make
    for mixer in created:
        mixer.cleanup()


def test_no_sources_returns_none_without_allocation(mixer_factory):
    factory = CountingContextFactory()
    mixer = mixer_factory(factory=factory)

    assert mixer.build_mix(None, None) is None
    assert factory.contexts == []
    assert mixer.context is None


def test_system_only_has_no_microphone_path(mixer_factory):
    mixer = mixer_factory()

    stream = mixer.build_mix(ToneSource(), None)

    assert stream is not None
    assert mixer.system_gain is not None and mixer.system_gain.gain == pytest.approx(1.5)
    assert mixer.system_compressor is not None
    assert mixer.presence_filter is None
    assert mixer.mic_gain is None
    assert mixer.mic_compressor is None
    pcm = stream.read(480)
    assert len(pcm) == 960
    assert np.any(np.frombuffer(pcm, dtype="<i2") != 0)


def test_both_sources_get_independent_chains(mixer_factory):
    mixer = mixer_factory()

    stream = mixer.build_mix(ToneSource(440), ToneSource(1000))

    assert stream is not None
    assert mixer.mic_gain.gain == pytest.approx(2.8)
    assert mixer.presence_filter.frequency == 2500.0
    assert mixer.presence_filter.gain_db == 6.0
    assert mixer.mic_presence_compressor is not mixer.system_compressor
    assert mixer.mic_compressor is not mixer.system_compressor
    assert mixer.limiter.ratio == 20.0
    assert mixer.limiter.threshold == -3.0
    assert set(mixer.limiter.inputs) == {mixer.mic_compressor, mixer.system_compressor}
    assert mixer.analyser in mixer.limiter.outputs
    assert mixer.context.destination in mixer.limiter.outputs


def test_rebuild_tears_down_previous_context(mixer_factory):
    factory = CountingContextFactory()
    mixer = mixer_factory(factory=factory)

    mixer.build_mix(ToneSource(), ToneSource())
    mixer.build_mix(ToneSource(), None)

    assert len(factory.contexts) == 2
    assert factory.contexts[0].state == "closed"
    assert factory.contexts[1].state == "running"


def test_quiet_mix_boosts_both_gains(mixer_factory):
    mixer = mixer_factory(_cfg(monitor_every=1))
    mixer.build_mix(ToneSource(amplitude=0.0), ToneSource(amplitude=0.0))

    level = mixer.check_levels()

    assert level is not None and level < 10
    assert mixer.mic_gain.gain == pytest.approx(2.8 * 1.1)
    assert mixer.system_gain.gain == pytest.approx(1.5 * 1.05)
    for _ in range(20):
        mixer.check_levels()
    assert mixer.mic_gain.gain == pytest.approx(4.0)
    assert mixer.system_gain.gain == pytest.approx(2.5)


def test_quiet_mix_without_mic_changes_nothing(mixer_factory):
    mixer = mixer_factory(_cfg(monitor_every=1))
    mixer.build_mix(ToneSource(amplitude=0.0), None)

    mixer.check_levels()

    assert mixer.system_gain.gain == pytest.approx(1.5)


def test_hot_mix_reduces_system_gain(mixer_factory):
    mixer = mixer_factory(_cfg(monitor_every=1, high_level=-1.0))
    mixer.build_mix(ToneSource(), None)

    mixer.check_levels()
    assert mixer.system_gain.gain == pytest.approx(1.5 * 0.95)
    for _ in range(40):
        mixer.check_levels()
    assert mixer.system_gain.gain == pytest.approx(0.5)


def test_levels_evaluated_every_nth_sample(mixer_factory):
    mixer = mixer_factory(_cfg(monitor_every=50))
    mixer.build_mix(ToneSource(amplitude=0.0), ToneSource(amplitude=0.0))

    results = [mixer.check_levels() for _ in range(50)]

    assert results[:49] == [None] * 49
    assert results[49] is not None


def test_construction_failure_cleans_up(mixer_factory):
    factory = CountingContextFactory()
    mixer = mixer_factory(_cfg(analyser={"fft_size": 1000}), factory=factory)

    assert mixer.build_mix(ToneSource(), ToneSource()) is None
    assert factory.contexts[0].state == "closed"
    assert mixer.context is None
    assert mixer.limiter is None


def test_cleanup_is_safe_repeatedly(mixer_factory):
    mixer = mixer_factory()
    mixer.cleanup()
    stream = mixer.build_mix(ToneSource(), ToneSource())
    mixer.cleanup()
    mixer.cleanup()

    assert stream.closed
    assert mixer.stream is None
    assert mixer.analyser is None


def test_monitor_thread_stops_on_cleanup(mixer_factory):
    mixer = mixer_factory(_cfg(monitor_interval_sec=0.01))
    mixer.build_mix(ToneSource(), ToneSource())
    thread = mixer._monitor_thread
    assert thread is not None and thread.is_alive()

    mixer.cleanup()

    assert not thread.is_alive()
