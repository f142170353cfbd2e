"""
Integration tests for VitalsPipeline.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.models import FrameSample, UpstreamQuality
from ppg_vitals.pipeline import VitalsPipeline


def _frame(i: int, fps: float = 30.0, hz: float = 1.2, depth: float = 0.01) -> FrameSample:
    t = i / fps
    scale = 1.0 - depth * np.sin(2 * np.pi * hz * t)
    return FrameSample(
        red=np.full((4, 4), 180.0 * scale),
        green=np.full((4, 4), 90.0 * scale),
        blue=np.full((4, 4), 60.0 * scale),
        timestamp=int(round(t * 1000)),
        upstream=UpstreamQuality(finger_confidence=0.95, overall_quality=90.0, snr=20.0),
    )


@pytest.fixture(scope="module")
def fed_pipeline() -> VitalsPipeline:
    """Pipeline after 20 s of a 72 BPM stream."""
    pipeline = VitalsPipeline(fps=30.0, window_seconds=15.0)
    for i in range(600):
        pipeline.push_frame(_frame(i))
    pipeline.compute()
    return pipeline


class TestVitalsPipeline:

    def test_waits_for_min_samples(self):
        pipeline = VitalsPipeline(fps=30.0)
        for i in range(100):
            pipeline.push_frame(_frame(i))
        assert pipeline.min_samples == 150
        assert pipeline.compute() is None
        assert pipeline.last_result is None

    def test_buffer_fill_ratio(self):
        pipeline = VitalsPipeline(fps=30.0, window_seconds=10.0)
        assert pipeline.buffer_fill_ratio == 0.0
        for i in range(150):
            pipeline.push_frame(_frame(i))
        assert pipeline.buffer_fill_ratio == pytest.approx(0.5)
        for i in range(150, 400):
            pipeline.push_frame(_frame(i))
        assert pipeline.buffer_fill_ratio == pytest.approx(1.0)

    def test_heart_rate(self, fed_pipeline):
        result = fed_pipeline.last_result
        assert result is not None
        assert abs(result.heart_rate.bpm - 72.0) <= 5.0, \
            f"Expected ~72 BPM, got {result.heart_rate.bpm:.1f}"
        assert 70.0 <= result.spo2.value <= 100.0

    def test_waveform_extracted(self, fed_pipeline):
        waveform = fed_pipeline.last_waveform
        assert waveform is not None
        assert waveform.amplitude > 0.0
        assert fed_pipeline.last_result.blood_pressure.confidence > 0.0

    def test_streaming_beats(self, fed_pipeline):
        assert fed_pipeline.detector.beat_count >= 15
        assert fed_pipeline.last_beat is not None
        assert abs(fed_pipeline.detector.bpm - 72.0) <= 4.0

    def test_experimental_outputs(self):
        pipeline = VitalsPipeline(fps=30.0, include_experimental=True)
        for i in range(300):
            pipeline.push_frame(_frame(i))
        result = pipeline.compute()
        assert result is not None
        assert result.glucose is not None
        assert result.lipids is not None

    def test_reset(self):
        pipeline = VitalsPipeline(fps=30.0)
        for i in range(300):
            pipeline.push_frame(_frame(i))
        assert pipeline.compute() is not None
        pipeline.reset()
        assert pipeline.buffer_fill_ratio == 0.0
        assert pipeline.last_result is None
        assert pipeline.last_beat is None
        assert pipeline.last_waveform is None
        assert pipeline.detector.beat_count == 0
        assert pipeline.compute() is None
