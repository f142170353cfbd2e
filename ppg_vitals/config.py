"""
Configuration records for the PPG vitals components.

Each component owns one dataclass.  Instances are validated on
construction of the component and again on every ``update_config`` call;
invalid combinations raise :class:`~ppg_vitals.exceptions.InvalidParameter`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from ppg_vitals.exceptions import InvalidParameter


class WindowType(str, Enum):
    RECTANGULAR = "rectangular"
    HANNING     = "hanning"
    HAMMING     = "hamming"
    BLACKMAN    = "blackman"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _require_positive(name: str, value: float) -> None:
    if not value > 0:
        raise InvalidParameter(f"{name} must be positive, got {value!r}", parameter=name)


def _require_band(name: str, band: Tuple[float, float]) -> None:
    low, high = band
    if not 0 <= low < high:
        raise InvalidParameter(
            f"{name} must satisfy 0 <= low < high, got {band!r}", parameter=name
        )


def _require_fraction(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise InvalidParameter(f"{name} must lie in [0, 1], got {value!r}", parameter=name)


# ---------------------------------------------------------------------------
# NumericalEngine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineConfig:
    """
    Parameters shared by every :class:`NumericalEngine` operation.

    ``peak_threshold`` is relative: a peak must have a prominence of at
    least ``peak_threshold × (max − min)`` of the smoothed signal.
    ``peak_min_distance`` is in samples; ``None`` derives it from the upper
    edge of ``physiological_range``.
    """

    sampling_rate:            float = 30.0
    window_type:              WindowType = WindowType.HANNING
    kalman_process_noise:     float = 0.01
    kalman_measurement_noise: float = 0.1
    peak_threshold:           float = 0.3
    peak_min_height:          Optional[float] = None
    peak_min_distance:        Optional[int] = None
    physiological_range:      Tuple[float, float] = (0.5, 4.0)   # Hz
    harmonic_tolerance:       float = 0.1                        # Hz
    max_harmonics:            int = 5
    max_kalman_states:        int = 64

    def validate(self) -> None:
        _require_positive("sampling_rate", self.sampling_rate)
        if self.kalman_process_noise < 0 or self.kalman_measurement_noise < 0:
            raise InvalidParameter("Kalman noise terms must be non-negative",
                                   parameter="kalman_noise")
        _require_fraction("peak_threshold", self.peak_threshold)
        if self.peak_min_distance is not None and self.peak_min_distance < 1:
            raise InvalidParameter("peak_min_distance must be >= 1",
                                   parameter="peak_min_distance")
        _require_band("physiological_range", self.physiological_range)
        _require_positive("harmonic_tolerance", self.harmonic_tolerance)
        if self.max_harmonics < 1:
            raise InvalidParameter("max_harmonics must be >= 1", parameter="max_harmonics")
        if self.max_kalman_states < 1:
            raise InvalidParameter("max_kalman_states must be >= 1",
                                   parameter="max_kalman_states")
        try:
            WindowType(self.window_type)
        except ValueError:
            raise InvalidParameter(f"Unknown window type {self.window_type!r}",
                                   parameter="window_type") from None


# ---------------------------------------------------------------------------
# SignalExtractor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionConfig:
    """Parameters for :class:`SignalExtractor`."""

    sampling_rate:       float = 30.0
    window_size:         int = 256          # analysis window, power of two
    filter_order:        int = 4
    cutoff_band:         Tuple[float, float] = (0.5, 4.0)   # Hz
    quality_threshold:   float = 0.7
    calibration_frames:  int = 30
    dc_window:           int = 31           # centred moving average width (samples)
    pulsatility_range:   Tuple[float, float] = (0.02, 20.0)  # %
    primary_channel:     str = "red"
    min_intensity:       float = 1e-3
    peak_min_distance_s: float = 0.35
    onset_fraction:      float = 0.1
    notch_search_s:      float = 0.25
    stability_limit:     float = 0.05       # relative step treated as fully unstable
    reference_amplitude: float = 0.01       # relative AC amplitude giving full score
    infrared_weights:    Tuple[float, float, float] = (0.7, 0.2, -0.1)

    def validate(self) -> None:
        _require_positive("sampling_rate", self.sampling_rate)
        n = self.window_size
        if n < 4 or n & (n - 1):
            raise InvalidParameter(f"window_size must be a power of two >= 4, got {n}",
                                   parameter="window_size")
        if self.filter_order < 1:
            raise InvalidParameter("filter_order must be >= 1", parameter="filter_order")
        _require_band("cutoff_band", self.cutoff_band)
        _require_fraction("quality_threshold", self.quality_threshold)
        if self.calibration_frames < 1:
            raise InvalidParameter("calibration_frames must be >= 1",
                                   parameter="calibration_frames")
        if self.dc_window < 1 or self.dc_window % 2 == 0:
            raise InvalidParameter(f"dc_window must be a positive odd integer, got "
                                   f"{self.dc_window}", parameter="dc_window")
        _require_band("pulsatility_range", self.pulsatility_range)
        if self.primary_channel not in ("red", "green", "blue", "infrared"):
            raise InvalidParameter(f"Unknown channel {self.primary_channel!r}",
                                   parameter="primary_channel")
        _require_positive("min_intensity", self.min_intensity)
        _require_positive("peak_min_distance_s", self.peak_min_distance_s)
        if not 0.0 < self.onset_fraction < 0.5:
            raise InvalidParameter("onset_fraction must lie in (0, 0.5)",
                                   parameter="onset_fraction")
        _require_positive("notch_search_s", self.notch_search_s)
        _require_positive("stability_limit", self.stability_limit)
        _require_positive("reference_amplitude", self.reference_amplitude)
        if len(self.infrared_weights) != 3:
            raise InvalidParameter("infrared_weights needs one weight per visible channel",
                                   parameter="infrared_weights")


# ---------------------------------------------------------------------------
# VitalsEstimator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VitalsConfig:
    """
    Parameters for :class:`VitalsEstimator`.

    The SpO2 and blood-pressure constants are empirical calibrations, not
    physical constants; they are exposed here so a deployment can tune them.
    """

    sampling_rate:       float = 30.0
    filter_order:        int = 4
    cutoff_band:         Tuple[float, float] = (0.5, 4.0)    # Hz
    rr_range_ms:         Tuple[float, float] = (300.0, 1500.0)

    # SpO2 = a − b·R
    spo2_a:              float = 110.0
    spo2_b:              float = 25.0
    spo2_range:          Tuple[float, float] = (70.0, 100.0)

    # SBP = c1·PWV + c2·HR + c3,  DBP = d1·PWV + d2·HR + d3
    bp_systolic_coeffs:  Tuple[float, float, float] = (3.0, 0.5, 80.0)
    bp_diastolic_coeffs: Tuple[float, float, float] = (1.5, 0.3, 50.0)
    bp_path_length_m:    float = 0.6
    bp_ptt_range_s:      Tuple[float, float] = (0.05, 0.5)
    systolic_range:      Tuple[float, float] = (70.0, 200.0)
    diastolic_range:     Tuple[float, float] = (40.0, 120.0)
    min_pulse_pressure:  float = 10.0

    # HRV
    lf_band:             Tuple[float, float] = (0.04, 0.15)
    hf_band:             Tuple[float, float] = (0.15, 0.4)
    tachogram_rate:      float = 4.0        # Hz
    min_rr_intervals:    int = 8            # for spectral HRV

    # Arrhythmia
    bradycardia_bpm:     float = 60.0
    tachycardia_bpm:     float = 100.0
    premature_ratio:     float = 0.8

    respiration_band:    Tuple[float, float] = (0.1, 0.5)    # Hz

    def validate(self) -> None:
        _require_positive("sampling_rate", self.sampling_rate)
        if self.filter_order < 1:
            raise InvalidParameter("filter_order must be >= 1", parameter="filter_order")
        _require_band("cutoff_band", self.cutoff_band)
        _require_band("rr_range_ms", self.rr_range_ms)
        _require_band("spo2_range", self.spo2_range)
        _require_band("bp_ptt_range_s", self.bp_ptt_range_s)
        _require_band("systolic_range", self.systolic_range)
        _require_band("diastolic_range", self.diastolic_range)
        _require_band("lf_band", self.lf_band)
        _require_band("hf_band", self.hf_band)
        _require_band("respiration_band", self.respiration_band)
        _require_positive("bp_path_length_m", self.bp_path_length_m)
        _require_positive("tachogram_rate", self.tachogram_rate)
        if self.min_rr_intervals < 2:
            raise InvalidParameter("min_rr_intervals must be >= 2",
                                   parameter="min_rr_intervals")
        if self.min_pulse_pressure < 0:
            raise InvalidParameter("min_pulse_pressure must be non-negative",
                                   parameter="min_pulse_pressure")
        if not self.bradycardia_bpm < self.tachycardia_bpm:
            raise InvalidParameter("bradycardia_bpm must be below tachycardia_bpm",
                                   parameter="bradycardia_bpm")
        _require_fraction("premature_ratio", self.premature_ratio)


# ---------------------------------------------------------------------------
# StreamingBeatDetector
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BeatDetectorConfig:
    """Parameters for :class:`StreamingBeatDetector`."""

    sample_rate:           float = 30.0
    window_size:           int = 60
    min_bpm:               float = 40.0
    max_bpm:               float = 200.0
    signal_threshold:      float = 0.4
    derivative_threshold:  float = -0.03
    min_confidence:        float = 0.6
    min_peak_time_ms:      float = 400.0
    warmup_ms:             float = 3000.0
    median_window:         int = 3
    moving_average_window: int = 3
    ema_alpha:             float = 0.4
    baseline_factor:       float = 0.98
    confirm_fraction:      float = 0.5
    bpm_alpha:             float = 0.2
    rr_history_size:       int = 12
    bpm_median_window:     int = 5
    low_signal_threshold:  float = 0.03
    low_signal_frames:     int = 10

    def validate(self) -> None:
        _require_positive("sample_rate", self.sample_rate)
        if self.window_size < 3:
            raise InvalidParameter("window_size must be >= 3", parameter="window_size")
        _require_band("bpm range", (self.min_bpm, self.max_bpm))
        _require_fraction("min_confidence", self.min_confidence)
        _require_fraction("confirm_fraction", self.confirm_fraction)
        if not 0.0 < self.ema_alpha <= 1.0:
            raise InvalidParameter("ema_alpha must lie in (0, 1]", parameter="ema_alpha")
        if not 0.0 < self.bpm_alpha <= 1.0:
            raise InvalidParameter("bpm_alpha must lie in (0, 1]", parameter="bpm_alpha")
        if not 0.0 <= self.baseline_factor < 1.0:
            raise InvalidParameter("baseline_factor must lie in [0, 1)",
                                   parameter="baseline_factor")
        if self.min_peak_time_ms < 0 or self.warmup_ms < 0:
            raise InvalidParameter("Time limits must be non-negative",
                                   parameter="min_peak_time_ms")
        for name in ("median_window", "moving_average_window", "rr_history_size",
                     "bpm_median_window", "low_signal_frames"):
            if getattr(self, name) < 1:
                raise InvalidParameter(f"{name} must be >= 1", parameter=name)
