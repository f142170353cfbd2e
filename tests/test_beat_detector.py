"""
Unit tests for StreamingBeatDetector.
Run with:  pytest tests/
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from ppg_vitals.beat_detector import DetectorState, StreamingBeatDetector
from ppg_vitals.exceptions import InvalidInput, InvalidParameter


def _pulse(n: int = 390, fs: float = 30.0, bpm: float = 75.0, amplitude: float = 2.0) -> np.ndarray:
    t = np.arange(n) / fs
    return amplitude * np.sin(2 * np.pi * bpm / 60.0 * t)


def _run(detector: StreamingBeatDetector, samples, timestamps=None):
    if timestamps is None:
        return [detector.process(v) for v in samples]
    return [detector.process(v, timestamp_ms=ts) for v, ts in zip(samples, timestamps)]


class TestBeatDetection:

    def test_periodic_pulse_detected(self):
        """13 s of a 75 BPM pulse: about 12 beats once the 3 s warm-up is over."""
        events = _run(StreamingBeatDetector(), _pulse())
        beats = [e for e in events if e.is_beat]
        assert abs(len(beats) - 12.5) <= 1, f"Expected ~12 beats, got {len(beats)}"
        assert abs(events[-1].bpm - 75.0) <= 3.0, f"Expected ~75 BPM, got {events[-1].bpm}"

    def test_no_beats_during_warm_up(self):
        events = _run(StreamingBeatDetector(), _pulse())
        assert all(e.timestamp_ms >= 3000.0 for e in events if e.is_beat)

    def test_rr_interval_reported(self):
        events = _run(StreamingBeatDetector(), _pulse())
        beats = [e for e in events if e.is_beat]
        assert beats[0].rr_interval_ms is not None
        assert beats[-1].rr_interval_ms == pytest.approx(800.0, abs=40.0)

    def test_explicit_timestamps_match_sample_clock(self):
        samples = _pulse()
        stamps = [i * 1000.0 / 30.0 for i in range(len(samples))]
        a = _run(StreamingBeatDetector(), samples)
        b = _run(StreamingBeatDetector(), samples, stamps)
        assert [e.is_beat for e in a] == [e.is_beat for e in b]
        assert a[-1].bpm == b[-1].bpm

    def test_flat_signal_has_no_beats(self):
        events = _run(StreamingBeatDetector(), np.full(300, 5.0))
        assert not any(e.is_beat for e in events)
        assert events[-1].bpm == 0.0

    def test_final_bpm(self):
        detector = StreamingBeatDetector()
        _run(detector, _pulse())
        assert abs(detector.get_final_bpm() - 75.0) <= 3.0
        assert detector.get_rr_intervals()
        assert detector.beat_count >= 11

    def test_slower_pulse(self):
        detector = StreamingBeatDetector()
        events = _run(detector, _pulse(n=600, bpm=60.0))
        assert abs(events[-1].bpm - 60.0) <= 3.0

    def test_fast_pulse(self):
        """140 BPM sits close to the 400 ms spacing limit; every beat should count."""
        detector = StreamingBeatDetector()
        events = _run(detector, _pulse(bpm=140.0))
        beats = [e for e in events if e.is_beat]
        assert len(beats) >= 20, f"Expected ~23 beats, got {len(beats)}"
        assert abs(events[-1].bpm - 140.0) <= 5.0, f"Expected ~140 BPM, got {events[-1].bpm}"
        assert np.median(detector.get_rr_intervals()) == pytest.approx(60000.0 / 140.0, abs=25.0)

    def test_non_finite_sample_rejected(self):
        detector = StreamingBeatDetector()
        with pytest.raises(InvalidInput):
            detector.process(math.nan)
        with pytest.raises(InvalidInput):
            detector.process(math.inf)


class TestDetectorState:

    def test_warm_up_state(self):
        detector = StreamingBeatDetector()
        assert detector.state is DetectorState.WARMING_UP
        _run(detector, _pulse(n=60))
        assert detector.state is DetectorState.WARMING_UP
        _run(detector, _pulse(n=60))
        assert detector.state is DetectorState.RUNNING

    def test_low_signal_clears_beat_timing(self):
        detector = StreamingBeatDetector()
        _run(detector, _pulse())
        assert detector.statistics["last_beat_ms"] is not None
        _run(detector, np.zeros(200))
        assert detector.statistics["last_beat_ms"] is None
        assert detector.bpm > 0.0

    def test_reset_behaves_like_fresh_instance(self):
        samples = _pulse()
        detector = StreamingBeatDetector()
        _run(detector, samples)
        detector.reset()
        assert detector.beat_count == 0
        assert detector.bpm == 0.0
        assert detector.statistics["samples"] == 0
        a = _run(detector, samples)
        b = _run(StreamingBeatDetector(), samples)
        assert [e.is_beat for e in a] == [e.is_beat for e in b]
        assert [e.filtered_value for e in a] == [e.filtered_value for e in b]

    def test_statistics_keys(self):
        detector = StreamingBeatDetector()
        _run(detector, _pulse(n=30))
        stats = detector.statistics
        for key in ("state", "samples", "beats", "bpm", "smoothed_bpm",
                    "rr_intervals", "baseline", "last_beat_ms"):
            assert key in stats, key
        assert stats["samples"] == 30

    def test_invalid_config(self):
        with pytest.raises(InvalidParameter):
            StreamingBeatDetector(ema_alpha=0.0)
        with pytest.raises(InvalidParameter):
            StreamingBeatDetector(min_bpm=200.0, max_bpm=40.0)
        with pytest.raises(InvalidParameter):
            StreamingBeatDetector(no_such_field=1)

    def test_update_config_resets_session(self):
        detector = StreamingBeatDetector()
        _run(detector, _pulse())
        detector.update_config(warmup_ms=0.0)
        assert detector.get_config().warmup_ms == 0.0
        assert detector.beat_count == 0
        events = _run(detector, _pulse(n=90))
        assert any(e.is_beat for e in events)
