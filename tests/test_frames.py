"""
Unit tests for the frame adapter and finger detector.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.exceptions import InvalidInput
from ppg_vitals.frames import FingerDetector, channel_snr, exposure_quality, frame_to_sample


def _make_finger_frame(h: int = 64, w: int = 64) -> np.ndarray:
    """Simulate a BGR frame with a red finger covering the lens."""
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    frame[:, :, 2] = 150   # R
    frame[:, :, 1] = 30    # G
    frame[:, :, 0] = 20    # B
    return frame


def _make_bright_frame(h: int = 64, w: int = 64) -> np.ndarray:
    """Simulate a bright, varied scene (no finger)."""
    rng = np.random.default_rng(42)
    return rng.integers(0, 256, (h, w, 3), dtype=np.uint8)


class TestFingerDetector:

    def test_finger_detected(self):
        detector = FingerDetector()
        assert detector.is_finger(_make_finger_frame()), "Finger frame should be detected"
        assert detector.confidence(_make_finger_frame()) > 0.9

    def test_bright_scene_rejected(self):
        detector = FingerDetector()
        assert not detector.is_finger(_make_bright_frame()), "Bright scene should not be detected"

    def test_grey_scene_rejected(self):
        frame = np.full((64, 64, 3), 60, dtype=np.uint8)
        assert FingerDetector().confidence(frame) == 0.0

    def test_invalid_frame(self):
        with pytest.raises(InvalidInput):
            FingerDetector().confidence(np.zeros((8, 8)))


class TestFrameToSample:

    def test_fields(self):
        sample = frame_to_sample(_make_finger_frame(), 1234)
        assert sample.timestamp == 1234
        assert sample.red.shape == (64, 64)
        assert sample.mean_intensities() == pytest.approx((150.0, 30.0, 20.0))
        assert sample.upstream.finger_confidence > 0.9
        assert sample.upstream.overall_quality == pytest.approx(100.0)
        assert sample.upstream.snr == pytest.approx(100.0)

    def test_roi_crop(self):
        frame = _make_finger_frame()
        frame[:10, :10, 2] = 250
        sample = frame_to_sample(frame, 0, roi=(16, 16, 32, 32))
        assert sample.red.shape == (32, 32)
        assert np.all(sample.red == 150.0)

    def test_invalid_shape(self):
        with pytest.raises(InvalidInput):
            frame_to_sample(np.zeros((10, 10), dtype=np.uint8), 0)

    def test_roi_outside_frame(self):
        with pytest.raises(InvalidInput):
            frame_to_sample(_make_finger_frame(), 0, roi=(200, 200, 10, 10))


class TestFrameQuality:

    def test_exposure_quality(self):
        assert exposure_quality(np.full((8, 8, 3), 255, dtype=np.uint8)) == 0.0
        assert exposure_quality(np.full((8, 8, 3), 128, dtype=np.uint8)) == 100.0

    def test_partial_clipping(self):
        frame = np.full((10, 10, 3), 128, dtype=np.uint8)
        frame[:5, :, 1] = 0
        assert exposure_quality(frame) == pytest.approx(50.0)

    def test_channel_snr(self):
        assert channel_snr(np.full((8, 8), 100, dtype=np.uint8)) == 100.0
        assert channel_snr(np.zeros((8, 8), dtype=np.uint8)) == 0.0
        noisy = _make_bright_frame()[:, :, 1]
        assert channel_snr(noisy) < 20.0
