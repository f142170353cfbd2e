"""
Data records exchanged between the PPG vitals components.

Derived records (``PPGSignal``, ``FrequencySpectrum``, ``BiometricResult``
and friends) are frozen; their arrays are flagged read-only so a consumer
cannot mutate a result that another consumer also holds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

import numpy as np


def _frozen_array(values) -> np.ndarray:
    arr = np.array(values, dtype=np.float64)
    arr.setflags(write=False)
    return arr


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UpstreamQuality:
    """Quality hints supplied by the capture layer for one frame."""

    finger_confidence: float = 1.0   # 0 – 1
    overall_quality:   float = 100.0  # 0 – 100
    snr:               float = 0.0    # dB


@dataclass
class FrameSample:
    """
    Raw channel intensities of one captured frame.

    ``red`` / ``green`` / ``blue`` hold the pixel values of the region of
    interest (any shape); only their means are used downstream.
    """

    red:       np.ndarray
    green:     np.ndarray
    blue:      np.ndarray
    timestamp: int                                   # ms
    upstream:  UpstreamQuality = field(default_factory=UpstreamQuality)

    def mean_intensities(self) -> Tuple[float, float, float]:
        """Return ``(red, green, blue)`` mean pixel intensity."""
        return (
            float(np.mean(self.red)),
            float(np.mean(self.green)),
            float(np.mean(self.blue)),
        )


@dataclass(frozen=True)
class CalibrationBaseline:
    """Per-channel reference intensity I₀ captured during warm-up."""

    red:      float
    green:    float
    blue:     float
    n_frames: int


# ---------------------------------------------------------------------------
# Signal records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PPGSignal:
    """
    Calibrated photoplethysmographic signal.

    All series are time-aligned and have one entry per input frame.
    ``ac_component`` / ``dc_component`` belong to ``primary_channel`` and
    are expressed in transmittance (``T = 10^−A``); ``channel_ac`` /
    ``channel_dc`` hold the same split for every channel.
    """

    red:               np.ndarray
    green:             np.ndarray
    blue:              np.ndarray
    infrared:          np.ndarray
    ac_component:      np.ndarray
    dc_component:      np.ndarray
    pulsatility_index: np.ndarray
    quality:           np.ndarray
    timestamps:        np.ndarray
    sampling_rate:     float
    primary_channel:   str = "red"
    channel_ac:        Mapping[str, np.ndarray] = field(default_factory=dict)
    channel_dc:        Mapping[str, np.ndarray] = field(default_factory=dict)
    baseline:          Optional[CalibrationBaseline] = None

    def __post_init__(self) -> None:
        for name in ("red", "green", "blue", "infrared", "ac_component", "dc_component",
                     "pulsatility_index", "quality", "timestamps"):
            object.__setattr__(self, name, _frozen_array(getattr(self, name)))
        object.__setattr__(self, "channel_ac",
                           {k: _frozen_array(v) for k, v in self.channel_ac.items()})
        object.__setattr__(self, "channel_dc",
                           {k: _frozen_array(v) for k, v in self.channel_dc.items()})

    def __len__(self) -> int:
        return len(self.red)

    @property
    def pulse_signal(self) -> np.ndarray:
        """
        Normalised blood-volume pulse of the primary channel.

        Transmittance drops when blood volume rises, so the sign is flipped
        to make systolic peaks positive.
        """
        dc = np.where(np.abs(self.dc_component) > 1e-12, self.dc_component, 1e-12)
        return -self.ac_component / dc

    @property
    def mean_quality(self) -> float:
        return float(np.mean(self.quality)) if len(self.quality) else 0.0


@dataclass(frozen=True)
class FrequencySpectrum:
    """One-sided spectrum produced by :meth:`NumericalEngine.spectral_analysis`."""

    frequencies:            np.ndarray
    magnitudes:             np.ndarray
    phases:                 np.ndarray
    dominant_frequency:     float
    harmonics:              Tuple[float, ...]
    spectral_purity:        float
    snr:                    float          # dB
    power_spectral_density: np.ndarray

    def __post_init__(self) -> None:
        for name in ("frequencies", "magnitudes", "phases", "power_spectral_density"):
            object.__setattr__(self, name, _frozen_array(getattr(self, name)))

    def band_power(self, low_hz: float, high_hz: float) -> float:
        """Integrated PSD over ``[low_hz, high_hz)``."""
        mask = (self.frequencies >= low_hz) & (self.frequencies < high_hz)
        if mask.sum() == 0:
            return 0.0
        df = float(self.frequencies[1] - self.frequencies[0]) if len(self.frequencies) > 1 else 0.0
        return float(np.sum(self.power_spectral_density[mask]) * df)


@dataclass(frozen=True)
class Peak:
    index:      int
    value:      float
    prominence: float
    width:      float   # samples, at half prominence
    left_base:  int
    right_base: int


@dataclass(frozen=True)
class PCAResult:
    eigenvalues:         np.ndarray
    eigenvectors:        np.ndarray   # columns are components
    explained_variance:  np.ndarray
    cumulative_variance: np.ndarray
    transformed:         np.ndarray
    mean:                np.ndarray


@dataclass(frozen=True)
class PulseWaveform:
    """Morphology of one representative pulse.  Indices refer to the input signal."""

    systolic_peak:        float
    systolic_index:       int
    onset_index:          int
    end_index:            int
    dicrotic_notch_index: int
    diastolic_peak:       float
    amplitude:            float
    width:                float   # s
    rise_time:            float   # s
    fall_time:            float   # s
    augmentation_index:   float   # %
    reflection_index:     float   # %


@dataclass
class KalmanFilterState:
    """Constant-velocity state ``[level, slope]`` and its covariance."""

    estimate:   np.ndarray
    covariance: np.ndarray
    n_updates:  int = 0


# ---------------------------------------------------------------------------
# Vital-sign records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HeartRateEstimate:
    bpm:        float
    confidence: float
    source:     str = "none"   # "rr", "spectrum" or "none"


@dataclass(frozen=True)
class Spo2Estimate:
    value:      float
    ratio:      float
    confidence: float


@dataclass(frozen=True)
class BloodPressure:
    systolic:   float
    diastolic:  float
    confidence: float = 0.0

    @property
    def mean_arterial(self) -> float:
        return self.diastolic + (self.systolic - self.diastolic) / 3.0


@dataclass(frozen=True)
class HRVMetrics:
    mean_rr:            float = 0.0   # ms
    sdnn:               float = 0.0   # ms
    rmssd:              float = 0.0   # ms
    pnn50:              float = 0.0   # %
    lf_power:           float = 0.0   # ms²
    hf_power:           float = 0.0   # ms²
    lf_hf_ratio:        float = 0.0
    sd1:                float = 0.0   # ms
    sd2:                float = 0.0   # ms
    triangular_index:   float = 0.0
    confidence:         float = 0.0


class ArrhythmiaType(str, Enum):
    NONE                = "none"
    BRADYCARDIA         = "bradycardia"
    TACHYCARDIA         = "tachycardia"
    ATRIAL_FIBRILLATION = "atrial_fibrillation"
    PREMATURE_BEATS     = "premature_beats"
    SINUS_ARRHYTHMIA    = "sinus_arrhythmia"


class ArrhythmiaSeverity(str, Enum):
    NONE     = "none"
    MILD     = "mild"
    MODERATE = "moderate"
    SEVERE   = "severe"


@dataclass(frozen=True)
class ArrhythmiaAnalysis:
    type:                      ArrhythmiaType = ArrhythmiaType.NONE
    severity:                  ArrhythmiaSeverity = ArrhythmiaSeverity.NONE
    risk_score:                float = 0.0   # 0 – 100
    abnormal_beats_percentage: float = 0.0
    confidence:                float = 0.0

    @property
    def has_arrhythmia(self) -> bool:
        return self.type is not ArrhythmiaType.NONE


@dataclass(frozen=True)
class RespirationEstimate:
    rate:       float   # breaths / min
    confidence: float


@dataclass(frozen=True)
class GlucoseEstimate:
    """Experimental.  Not a clinical measurement."""

    value:      float   # mg/dL
    confidence: float


@dataclass(frozen=True)
class LipidEstimate:
    """Experimental.  Not a clinical measurement."""

    total_cholesterol: float   # mg/dL
    triglycerides:     float   # mg/dL
    confidence:        float


@dataclass(frozen=True)
class HemoglobinEstimate:
    """Experimental.  Not a clinical measurement."""

    value:      float   # g/dL
    confidence: float


@dataclass(frozen=True)
class BiometricResult:
    """Snapshot of every vital sign derived from one PPG window."""

    heart_rate:      HeartRateEstimate
    spo2:            Spo2Estimate
    blood_pressure:  BloodPressure
    hrv:             HRVMetrics
    arrhythmia:      ArrhythmiaAnalysis
    perfusion_index: float
    respiration:     RespirationEstimate
    stress_index:    float
    timestamp:       int                      # ms, last sample of the window
    heart_rate_trend: float = 0.0             # Kalman-smoothed BPM
    glucose:         Optional[GlucoseEstimate] = None
    lipids:          Optional[LipidEstimate] = None
    hemoglobin:      Optional[HemoglobinEstimate] = None
    confidences:     Mapping[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, float]:
        """Flat scalar view, handy for logging."""
        out = {
            "heart_rate": self.heart_rate.bpm,
            "heart_rate_trend": self.heart_rate_trend,
            "spo2": self.spo2.value,
            "systolic": self.blood_pressure.systolic,
            "diastolic": self.blood_pressure.diastolic,
            "sdnn": self.hrv.sdnn,
            "rmssd": self.hrv.rmssd,
            "perfusion_index": self.perfusion_index,
            "respiration_rate": self.respiration.rate,
            "stress_index": self.stress_index,
            "risk_score": self.arrhythmia.risk_score,
        }
        if self.glucose is not None:
            out["glucose"] = self.glucose.value
        if self.lipids is not None:
            out["total_cholesterol"] = self.lipids.total_cholesterol
            out["triglycerides"] = self.lipids.triglycerides
        if self.hemoglobin is not None:
            out["hemoglobin"] = self.hemoglobin.value
        return out


@dataclass(frozen=True)
class BeatEvent:
    """Output of :meth:`StreamingBeatDetector.process` for one sample."""

    is_beat:        bool
    bpm:            float
    confidence:     float
    filtered_value: float
    timestamp_ms:   float
    rr_interval_ms: Optional[float] = None
