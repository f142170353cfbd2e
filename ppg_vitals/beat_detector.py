"""
Streaming single-sample heartbeat detector.

Algorithm
---------
Each incoming sample passes through

    median(3) → moving average(3) → EMA(α) → rolling window

A slowly drifting one-pole baseline is subtracted to give the
*normalised* value, and a 3-point derivative is kept alongside it.

1. A peak candidate opens when the normalised value is above
   ``signal_threshold``, the derivative has turned sufficiently negative
   (the signal has just passed its top) and the detection confidence of
   the recent maximum is high enough.  While tracked, the candidate keeps
   the time of its maximum, refined between samples by a parabolic fit.
2. The candidate is confirmed once the signal falls below
   ``confirm_fraction`` of the candidate peak while the last three
   values decrease monotonically.  It is dropped if the signal crosses
   the baseline first, or if its peak lies less than ``min_peak_time_ms``
   after the previous beat's peak.  Beat timing and RR intervals are
   measured peak to peak.
3. Confirmed beats feed a bounded RR history, an exponentially smoothed
   BPM and a median over recent rounded BPM values (the reported BPM).

During the first ``warmup_ms`` after a reset peaks are tracked (so the
first RR interval after warm-up is valid) but no beat events are emitted.
A run of ``low_signal_frames`` near-zero samples clears peak tracking,
which happens when the finger leaves the lens.

The detector is not thread-safe; feed each session from one consumer.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections import deque
from enum import Enum
from typing import Deque, Dict, List, Optional

import numpy as np

from ppg_vitals.config import BeatDetectorConfig
from ppg_vitals.exceptions import InvalidInput, InvalidParameter
from ppg_vitals.models import BeatEvent

logger = logging.getLogger(__name__)


class DetectorState(Enum):
    WARMING_UP = "warming_up"
    RUNNING    = "running"


class StreamingBeatDetector:
    """
    Online beat detector.

    Parameters
    ----------
    config:
        Detector configuration.  Defaults to :class:`BeatDetectorConfig()`.
    **overrides:
        Individual config fields applied on top of *config*.
    """

    def __init__(self, config: Optional[BeatDetectorConfig] = None, **overrides) -> None:
        self._config = self._merge_config(config or BeatDetectorConfig(), overrides)
        self._init_state()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(self, value: float, timestamp_ms: Optional[float] = None) -> BeatEvent:
        """
        Consume one sample.

        Parameters
        ----------
        value:
            Filtered intensity sample (any scale; larger = more blood).
        timestamp_ms:
            Capture time.  When omitted the time is derived from the
            sample count and ``sample_rate``.
        """
        value = float(value)
        if not math.isfinite(value):
            raise InvalidInput(f"Non-finite sample {value!r}")
        cfg = self._config

        if timestamp_ms is None:
            now = self._sample_count * 1000.0 / cfg.sample_rate
        else:
            now = float(timestamp_ms)
        if self._start_ms is None:
            self._start_ms = now
        self._sample_count += 1
        self._now_ms = now

        smoothed = self._smooth(value)
        if self._baseline is None:
            self._baseline = smoothed
        else:
            self._baseline = cfg.baseline_factor * self._baseline + (1.0 - cfg.baseline_factor) * smoothed
        normalized = smoothed - self._baseline
        self._normalized.append(normalized)
        self._times.append(now)
        derivative = (self._normalized[-1] - self._normalized[-3]) / 2.0 if len(self._normalized) >= 3 else 0.0
        confidence = self._detection_confidence(normalized)

        if self._track_low_signal(normalized):
            return BeatEvent(False, self.bpm, 0.0, normalized, now)

        if self._candidate_value is None:
            if len(self._normalized) >= 3:
                peak_confidence = self._detection_confidence(max(list(self._normalized)[-3:]))
                if (normalized > cfg.signal_threshold
                        and derivative < cfg.derivative_threshold
                        and peak_confidence >= cfg.min_confidence):
                    self._open_candidate(peak_confidence)
        elif normalized > self._candidate_value:
            self._candidate_value = normalized
            self._candidate_ms = now
            self._candidate_left = self._normalized[-2]
            self._candidate_right = None
        elif self._candidate_right is None:
            self._candidate_right = normalized

        if self._candidate_value is not None:
            if normalized < 0.0:
                self._candidate_value = None
            elif (normalized < cfg.confirm_fraction * self._candidate_value
                    and self._monotonic_decrease()):
                peak_ms = self._candidate_peak_ms()
                if (self._last_beat_ms is not None
                        and peak_ms - self._last_beat_ms < cfg.min_peak_time_ms):
                    # Too close to the previous beat
                    self._candidate_value = None
                else:
                    return self._confirm_beat(now, peak_ms, normalized)

        return BeatEvent(False, self.bpm, confidence, normalized, now)

    @property
    def state(self) -> DetectorState:
        if self._start_ms is None or self._now_ms - self._start_ms < self._config.warmup_ms:
            return DetectorState.WARMING_UP
        return DetectorState.RUNNING

    @property
    def bpm(self) -> float:
        """Median of recent rounded BPM values (0 before the first RR interval)."""
        if not self._bpm_values:
            return 0.0
        return float(np.median(self._bpm_values))

    @property
    def smoothed_bpm(self) -> float:
        return self._smoothed_bpm

    @property
    def beat_count(self) -> int:
        return self._beat_count

    def get_final_bpm(self) -> float:
        """Session summary BPM: median of the instantaneous BPM history."""
        if not self._bpm_history:
            return 0.0
        return float(round(np.median(self._bpm_history)))

    def get_rr_intervals(self) -> List[float]:
        return list(self._rr_intervals)

    @property
    def statistics(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "samples": self._sample_count,
            "beats": self._beat_count,
            "bpm": self.bpm,
            "smoothed_bpm": self._smoothed_bpm,
            "rr_intervals": len(self._rr_intervals),
            "baseline": self._baseline,
            "last_beat_ms": self._last_beat_ms,
        }

    def get_config(self) -> BeatDetectorConfig:
        return self._config

    def update_config(self, **changes) -> BeatDetectorConfig:
        """
        Apply configuration changes.

        Buffer sizes depend on the config, so session state is reset.
        """
        self._config = self._merge_config(self._config, changes)
        self._init_state()
        return self._config

    def reset(self) -> None:
        """Clear every filter buffer, the baseline, beat timing and BPM history."""
        self._init_state()
        logger.info("Beat detector reset.")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_config(base: BeatDetectorConfig, changes: dict) -> BeatDetectorConfig:
        try:
            config = dataclasses.replace(base, **changes) if changes else base
        except TypeError as e:
            raise InvalidParameter(str(e), parameter="config") from e
        config.validate()
        return config

    def _init_state(self) -> None:
        cfg = self._config
        self._raw: Deque[float] = deque(maxlen=cfg.median_window)
        self._medians: Deque[float] = deque(maxlen=cfg.moving_average_window)
        self._ema: Optional[float] = None
        self._window: Deque[float] = deque(maxlen=cfg.window_size)
        self._baseline: Optional[float] = None
        self._normalized: Deque[float] = deque(maxlen=4)
        self._times: Deque[float] = deque(maxlen=4)

        self._candidate_value: Optional[float] = None
        self._candidate_confidence = 0.0
        self._candidate_ms = 0.0
        self._candidate_left: Optional[float] = None
        self._candidate_right: Optional[float] = None
        self._last_beat_ms: Optional[float] = None
        self._low_count = 0

        self._rr_intervals: Deque[float] = deque(maxlen=cfg.rr_history_size)
        self._bpm_history: Deque[float] = deque(maxlen=cfg.rr_history_size)
        self._bpm_values: Deque[int] = deque(maxlen=cfg.bpm_median_window)
        self._smoothed_bpm = 0.0
        self._beat_count = 0

        self._sample_count = 0
        self._start_ms: Optional[float] = None
        self._now_ms = 0.0

    def _smooth(self, value: float) -> float:
        self._raw.append(value)
        self._medians.append(float(np.median(self._raw)))
        averaged = float(np.mean(self._medians))
        if self._ema is None:
            self._ema = averaged
        else:
            alpha = self._config.ema_alpha
            self._ema = alpha * averaged + (1.0 - alpha) * self._ema
        self._window.append(self._ema)
        return self._ema

    def _detection_confidence(self, normalized: float) -> float:
        """How tall the current value is relative to the recent swing (0 – 1)."""
        if len(self._window) < 3:
            return 0.0
        swing = max(self._window) - min(self._window)
        if swing <= 1e-12:
            return 0.0
        return float(np.clip(normalized / (0.5 * swing), 0.0, 1.0))

    def _monotonic_decrease(self) -> bool:
        values = list(self._normalized)[-3:]
        return len(values) == 3 and values[0] > values[1] > values[2]

    def _open_candidate(self, confidence: float) -> None:
        """Start tracking the largest of the last three values as a peak."""
        values = list(self._normalized)
        times = list(self._times)
        k = len(values) - 3 + int(np.argmax(values[-3:]))
        self._candidate_value = values[k]
        self._candidate_ms = times[k]
        self._candidate_left = values[k - 1] if k > 0 else None
        self._candidate_right = values[k + 1] if k + 1 < len(values) else None
        self._candidate_confidence = confidence

    def _candidate_peak_ms(self) -> float:
        """Peak time of the candidate, refined by a parabola through its neighbours."""
        left, right = self._candidate_left, self._candidate_right
        if left is None or right is None:
            return self._candidate_ms
        denom = left - 2.0 * self._candidate_value + right
        if denom >= 0.0:
            return self._candidate_ms
        offset = float(np.clip(0.5 * (left - right) / denom, -0.5, 0.5))
        return self._candidate_ms + offset * 1000.0 / self._config.sample_rate

    def _track_low_signal(self, normalized: float) -> bool:
        """Clear peak tracking after a run of near-zero samples.  Returns True on reset."""
        cfg = self._config
        if abs(normalized) < cfg.low_signal_threshold:
            self._low_count += 1
        else:
            self._low_count = 0
        if self._low_count >= cfg.low_signal_frames:
            if self._candidate_value is not None or self._last_beat_ms is not None:
                logger.debug("Low signal for %d samples; clearing peak tracking.", self._low_count)
            self._candidate_value = None
            self._last_beat_ms = None
            self._low_count = 0
            return True
        return False

    def _confirm_beat(self, now: float, peak_ms: float, normalized: float) -> BeatEvent:
        cfg = self._config
        confidence = self._candidate_confidence
        previous = self._last_beat_ms
        self._candidate_value = None
        self._last_beat_ms = peak_ms

        if self.state is DetectorState.WARMING_UP:
            return BeatEvent(False, self.bpm, confidence, normalized, now)

        rr: Optional[float] = None
        if previous is not None:
            interval = peak_ms - previous
            instant = 60000.0 / interval if interval > 0 else 0.0
            if cfg.min_bpm <= instant <= cfg.max_bpm:
                rr = interval
                self._rr_intervals.append(interval)
                self._bpm_history.append(instant)
                if self._smoothed_bpm <= 0:
                    self._smoothed_bpm = instant
                else:
                    self._smoothed_bpm = cfg.bpm_alpha * instant + (1.0 - cfg.bpm_alpha) * self._smoothed_bpm
                self._bpm_values.append(int(round(self._smoothed_bpm)))

        self._beat_count += 1
        return BeatEvent(True, self.bpm, confidence, normalized, now, rr)
