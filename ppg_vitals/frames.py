"""
Frame adapter: BGR camera image → :class:`FrameSample`.

When a finger covers the lens (torch on), the frame becomes:
  - Dominated by reddish tones (light diffused through perfused tissue).
  - Much darker than an open scene, or saturated red with the torch.
  - Low in spatial variance (uniform colour, no edges).

:class:`FingerDetector` scores those three cues into a confidence, and
:func:`frame_to_sample` packs the channel pixels together with an
:class:`UpstreamQuality` record (finger confidence, exposure quality and
green-channel SNR) for the signal extractor.
"""

from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

from ppg_vitals.exceptions import InvalidInput
from ppg_vitals.models import FrameSample, UpstreamQuality

Roi = Tuple[int, int, int, int]   # x, y, w, h


class FingerDetector:
    """
    Heuristic detector: is the camera lens covered by a finger?

    Parameters
    ----------
    brightness_threshold:
        Maximum allowed *mean* pixel brightness (0 – 255) without torch
        saturation of the red channel.  Default: 100.
    variance_threshold:
        Maximum allowed *spatial variance* of green channel intensity.
        A covered lens yields a nearly uniform field.  Default: 800.
    red_dominance:
        Minimum ratio ``mean_red / mean_green`` required to confirm
        skin tone is present.  Default: 1.05.
    min_confidence:
        Confidence at or above which :meth:`is_finger` answers True.
    """

    def __init__(
        self,
        brightness_threshold: float = 100.0,
        variance_threshold: float = 800.0,
        red_dominance: float = 1.05,
        min_confidence: float = 0.6,
    ) -> None:
        self.brightness_threshold = brightness_threshold
        self.variance_threshold = variance_threshold
        self.red_dominance = red_dominance
        self.min_confidence = min_confidence

    def confidence(self, frame: np.ndarray) -> float:
        """
        Finger-presence confidence in [0, 1].

        Parameters
        ----------
        frame:
            BGR image array (H × W × 3, uint8).
        """
        _check_frame(frame)
        mean, std = cv2.meanStdDev(frame)
        mean_b, mean_g, mean_r = (float(v) for v in mean.ravel()[:3])
        variance = float(std.ravel()[1]) ** 2

        brightness = (mean_r + mean_g + mean_b) / 3.0
        red_ratio = mean_r / (mean_g + 1e-6)

        # Torch-lit fingers saturate red but stay dim in green / blue
        dark = brightness if mean_r < 250 else (mean_g + mean_b) / 2.0
        dark_score = float(np.clip(2.0 - dark / self.brightness_threshold, 0.0, 1.0))
        uniform_score = float(np.clip(2.0 - variance / self.variance_threshold, 0.0, 1.0))
        skin_score = float(np.clip((red_ratio - 1.0) / (self.red_dominance - 1.0), 0.0, 1.0)) \
            if self.red_dominance > 1.0 else float(red_ratio >= self.red_dominance)

        return dark_score * uniform_score * skin_score

    def is_finger(self, frame: np.ndarray) -> bool:
        """Return *True* if *frame* looks like a finger covering the lens."""
        return self.confidence(frame) >= self.min_confidence


def exposure_quality(frame: np.ndarray) -> float:
    """
    Exposure score 0 – 100.

    Penalises clipped pixels (0 or 255) in the green channel, which
    carries most of the pulsatile signal.
    """
    _check_frame(frame)
    green = frame[:, :, 1]
    clipped = np.count_nonzero((green <= 2) | (green >= 253))
    return float(100.0 * (1.0 - clipped / green.size))


def channel_snr(channel: np.ndarray) -> float:
    """Spatial SNR (dB) of one channel: mean over standard deviation."""
    mean, std = cv2.meanStdDev(channel)
    m, s = float(mean.ravel()[0]), float(std.ravel()[0])
    if m <= 0:
        return 0.0
    if s <= 1e-9:
        return 100.0
    return float(min(100.0, 20.0 * np.log10(m / s)))


def frame_to_sample(
    frame: np.ndarray,
    timestamp_ms: int,
    detector: Optional[FingerDetector] = None,
    roi: Optional[Roi] = None,
) -> FrameSample:
    """
    Build a :class:`FrameSample` from a BGR image.

    Parameters
    ----------
    frame:
        BGR image array (H × W × 3, uint8).
    timestamp_ms:
        Capture time in milliseconds.
    detector:
        Finger detector used for the upstream confidence.  A default one
        is created if omitted.
    roi:
        Optional ``(x, y, w, h)`` crop applied before anything else.
    """
    _check_frame(frame)
    if roi is not None:
        x, y, w, h = roi
        frame = np.ascontiguousarray(frame[y:y + h, x:x + w])
        if frame.size == 0:
            raise InvalidInput(f"ROI {roi} does not overlap the frame", details={"roi": list(roi)})
    detector = detector or FingerDetector()

    blue, green, red = cv2.split(frame)
    upstream = UpstreamQuality(
        finger_confidence=detector.confidence(frame),
        overall_quality=exposure_quality(frame),
        snr=channel_snr(green),
    )
    return FrameSample(
        red=red.astype(np.float64),
        green=green.astype(np.float64),
        blue=blue.astype(np.float64),
        timestamp=int(timestamp_ms),
        upstream=upstream,
    )


def _check_frame(frame: np.ndarray) -> None:
    if not isinstance(frame, np.ndarray) or frame.ndim != 3 or frame.shape[2] < 3 or frame.size == 0:
        raise InvalidInput("Expected a BGR image array (H × W × 3)",
                           details={"shape": list(getattr(frame, "shape", ()))})
