"""
Rolling-window vitals pipeline.

Algorithm
---------
1. Keep a rolling buffer of the last ``window_seconds`` frame samples.
2. Feed every pushed frame to a :class:`StreamingBeatDetector` for
   low-latency beat feedback.
3. On :meth:`VitalsPipeline.compute`, run the buffered frames through
   :class:`SignalExtractor` → pulse waveform → :class:`VitalsEstimator`.

The extractor, estimator and detector share one :class:`NumericalEngine`
only where it is safe: the detector needs none, and extractor and
estimator run sequentially inside ``compute``.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Deque, Optional

import numpy as np

from ppg_vitals.beat_detector import StreamingBeatDetector
from ppg_vitals.config import BeatDetectorConfig, EngineConfig, ExtractionConfig, VitalsConfig
from ppg_vitals.exceptions import NoPeaksFound, SignalTooShort
from ppg_vitals.models import BeatEvent, BiometricResult, FrameSample, PulseWaveform
from ppg_vitals.numerical_engine import NumericalEngine
from ppg_vitals.signal_extractor import SignalExtractor
from ppg_vitals.vitals_estimator import VitalsEstimator

logger = logging.getLogger(__name__)


class VitalsPipeline:
    """
    Frame-in, vitals-out convenience wrapper.

    Parameters
    ----------
    fps:
        Frames-per-second of the incoming stream.
    window_seconds:
        Length of the analysis window in seconds.  Recommended: 10 – 20 s.
    min_samples:
        Minimum number of buffered frames before :meth:`compute` returns
        a result.  Defaults to 5 × fps.
    include_experimental:
        Also produce the experimental glucose / lipid estimates.
    """

    def __init__(
        self,
        fps: float = 30.0,
        window_seconds: float = 15.0,
        min_samples: Optional[int] = None,
        include_experimental: bool = False,
        engine_config: Optional[EngineConfig] = None,
        extraction_config: Optional[ExtractionConfig] = None,
        vitals_config: Optional[VitalsConfig] = None,
        detector_config: Optional[BeatDetectorConfig] = None,
    ) -> None:
        self.fps = fps
        self.window_seconds = window_seconds
        self.include_experimental = include_experimental

        maxlen = int(fps * window_seconds)
        self._buffer: Deque[FrameSample] = deque(maxlen=maxlen)
        self.min_samples: int = min_samples if min_samples is not None else int(5 * fps)

        self.engine = NumericalEngine(engine_config, sampling_rate=fps)
        self.extractor = SignalExtractor(extraction_config, engine=self.engine, sampling_rate=fps)
        self.estimator = VitalsEstimator(vitals_config, engine=self.engine, sampling_rate=fps)
        self.detector = StreamingBeatDetector(detector_config, sample_rate=fps)

        self._last_result: Optional[BiometricResult] = None
        self._last_beat: Optional[BeatEvent] = None
        self._last_waveform: Optional[PulseWaveform] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push_frame(self, sample: FrameSample) -> BeatEvent:
        """
        Append *sample* to the buffer and run the streaming detector on it.

        The detector sees the negative log of the green intensity scaled so
        a 1 % intensity change is about one unit; it rises with blood volume.
        """
        self._buffer.append(sample)
        green = max(float(np.mean(sample.green)), 1e-3)
        self._last_beat = self.detector.process(-100.0 * math.log(green),
                                                timestamp_ms=sample.timestamp)
        return self._last_beat

    def compute(self) -> Optional[BiometricResult]:
        """
        Extract the buffered window and estimate vitals.

        Returns ``None`` while fewer than ``min_samples`` frames are buffered.
        """
        if len(self._buffer) < self.min_samples:
            return None

        ppg = self.extractor.extract(list(self._buffer))
        pulse = self.extractor.filtered_pulse(ppg)
        if len(pulse) >= 5:
            pulse = self.engine.savitzky_golay(pulse, 5, 2)
        waveform: Optional[PulseWaveform] = None
        try:
            waveform = self.extractor.extract_pulse_waveform(pulse)
        except (NoPeaksFound, SignalTooShort) as e:
            logger.debug("No pulse waveform this window: %s", e)
        self._last_waveform = waveform

        result = self.estimator.compute_biometrics(
            ppg, waveform=waveform, include_experimental=self.include_experimental
        )
        self._last_result = result
        return result

    @property
    def buffer_fill_ratio(self) -> float:
        """How full the rolling buffer is (0 – 1)."""
        return len(self._buffer) / self._buffer.maxlen

    @property
    def last_result(self) -> Optional[BiometricResult]:
        return self._last_result

    @property
    def last_beat(self) -> Optional[BeatEvent]:
        return self._last_beat

    @property
    def last_waveform(self) -> Optional[PulseWaveform]:
        return self._last_waveform

    def reset(self) -> None:
        """Clear the buffer and every component's session state."""
        self._buffer.clear()
        self.extractor.reset()
        self.estimator.reset()
        self.detector.reset()
        self._last_result = None
        self._last_beat = None
        self._last_waveform = None
