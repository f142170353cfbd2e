"""
Vital-sign estimator.

Derives heart rate, SpO2, blood pressure, heart-rate variability,
arrhythmia indicators, perfusion, respiration and a stress index from a
:class:`PPGSignal` (and optionally a :class:`PulseWaveform`).

Every estimator returns a confidence in [0, 1] and fails closed: when the
data cannot support an estimate it returns a neutral value with zero
confidence instead of raising.  Only the entry guard of
:meth:`VitalsEstimator.compute_biometrics` raises, for signals that are
too short to analyse at all.

Formulas
--------
- Heart rate: ``60000 / mean(RR)``; fallback ``dominant_frequency × 60``.
- SpO2: ratio of ratios ``R = (AC_red/DC_red) / (AC_ir/DC_ir)``,
  ``SpO2 = a − b·R`` clamped to [70, 100] %.
- Blood pressure: ``SBP = c1·PWV + c2·HR + c3`` (DBP analogous) with
  ``PWV = path_length / PTT`` and PTT taken from the pulse upstroke.
- HRV: SDNN, RMSSD, pNN50, Poincaré SD1/SD2, triangular index and LF/HF
  from a 4 Hz resampled tachogram.

References
----------
- Task Force of the ESC and NASPE, "Heart rate variability: standards of
  measurement, physiological interpretation and clinical use." 1996.
- Webster J.G., "Design of Pulse Oximeters." IOP Publishing, 1997.
- Mukkamala R. et al., "Toward ubiquitous blood pressure monitoring via
  pulse transit time." IEEE Trans. Biomed. Eng., 2015.

Glucose and lipid estimates are experimental regressions on optical
features with no spectroscopic hardware behind them.  They are disabled
by default and their confidence never exceeds 0.5.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.signal import hilbert

from ppg_vitals.config import VitalsConfig
from ppg_vitals.exceptions import InvalidParameter, SignalTooShort, SingularMatrix
from ppg_vitals.models import (
    ArrhythmiaAnalysis,
    ArrhythmiaSeverity,
    ArrhythmiaType,
    BiometricResult,
    BloodPressure,
    FrequencySpectrum,
    GlucoseEstimate,
    HeartRateEstimate,
    HemoglobinEstimate,
    HRVMetrics,
    LipidEstimate,
    PPGSignal,
    PulseWaveform,
    RespirationEstimate,
    Spo2Estimate,
)
from ppg_vitals.numerical_engine import NumericalEngine
from ppg_vitals.signal_extractor import centred_moving_average

logger = logging.getLogger(__name__)

_EPS = 1e-12
_MIN_BIOMETRIC_SAMPLES = 4
_HISTOGRAM_BIN_MS = 1000.0 / 128.0
_RESPIRATION_MIN_SECONDS = 8.0
_EXPERIMENTAL_MAX_CONFIDENCE = 0.5

# Experimental glucose regression (per-channel pulsatile absorbance, milli-A)
_GLUCOSE_INTERCEPT = 90.0
_GLUCOSE_WEIGHTS = {"red": 0.1, "green": 0.15, "blue": 0.08, "infrared": 0.13}
_GLUCOSE_RANGE = (40.0, 400.0)
_GLUCOSE_TEMP_COEFF = 0.002
_AMBIENT_TEMP_C = 25.0
_BODY_TEMP_C = 37.0

_CHOLESTEROL_RANGE = (100.0, 500.0)
_TRIGLYCERIDE_RANGE = (50.0, 400.0)

# Experimental haemoglobin (Beer–Lambert, extinction in arbitrary units)
_HB_EXTINCTION = 0.0091
_HBO2_EXTINCTION = 0.0213
_HEMOGLOBIN_REFERENCE = 14.0     # g/dL at the reference attenuation
_REFERENCE_ATTENUATION = 0.02
_REFERENCE_SATURATION = 0.97
_HEMOGLOBIN_RANGE = (3.0, 25.0)

RRInput = Union[Sequence[float], np.ndarray]


def _extinction(saturation: float) -> float:
    """Blood extinction at oxygen *saturation* (fraction)."""
    return _HB_EXTINCTION * (1.0 - saturation) + _HBO2_EXTINCTION * saturation


class VitalsEstimator:
    """
    Vital-sign derivation over PPG signals.

    Parameters
    ----------
    config:
        Estimator configuration.  Defaults to :class:`VitalsConfig()`.
    engine:
        Shared :class:`NumericalEngine`.  A private one is created if omitted.
    **overrides:
        Individual config fields applied on top of *config*.
    """

    def __init__(
        self,
        config: Optional[VitalsConfig] = None,
        engine: Optional[NumericalEngine] = None,
        **overrides,
    ) -> None:
        self._config = self._merge_config(config or VitalsConfig(), overrides)
        self._engine = engine or NumericalEngine(sampling_rate=self._config.sampling_rate)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def engine(self) -> NumericalEngine:
        return self._engine

    def get_config(self) -> VitalsConfig:
        return self._config

    def update_config(self, **changes) -> VitalsConfig:
        """Apply configuration changes, effective on the next call."""
        self._config = self._merge_config(self._config, changes)
        self._engine.reset()
        return self._config

    def reset(self) -> None:
        """Clear the engine caches (including the heart-rate trend stream)."""
        self._engine.reset()

    # ------------------------------------------------------------------
    # Heart rate
    # ------------------------------------------------------------------

    def extract_rr_intervals(self, signal, sampling_rate: Optional[float] = None) -> np.ndarray:
        """
        Beat-to-beat intervals (ms) from the peaks of *signal*.

        Intervals outside ``rr_range_ms`` are dropped.
        """
        fs = float(sampling_rate or self._config.sampling_rate)
        peaks = self._engine.detect_peaks_advanced(signal, sampling_rate=fs)
        if len(peaks) < 2:
            return np.array([])
        indices = np.array([p.index for p in peaks], dtype=np.float64)
        rr = np.diff(indices) / fs * 1000.0
        return self._valid_rr(rr)

    def compute_heart_rate(
        self,
        rr_intervals: RRInput,
        spectrum: Optional[FrequencySpectrum] = None,
    ) -> HeartRateEstimate:
        """
        Heart rate from RR intervals, falling back to the spectrum.

        Confidence blends spectral SNR (0.35), spectral purity (0.35) and
        RR-interval consistency (0.3).
        """
        rr = self._valid_rr(rr_intervals)
        if rr.size:
            bpm = 60000.0 / float(np.mean(rr))
            source = "rr"
        elif spectrum is not None and spectrum.dominant_frequency > 0:
            bpm = spectrum.dominant_frequency * 60.0
            source = "spectrum"
        else:
            return HeartRateEstimate(bpm=0.0, confidence=0.0, source="none")

        snr_factor = float(np.clip(spectrum.snr / 20.0, 0.0, 1.0)) if spectrum else 0.0
        purity = float(spectrum.spectral_purity) if spectrum else 0.0
        if rr.size >= 2:
            consistency = float(np.clip(1.0 - np.std(rr) / np.mean(rr), 0.0, 1.0))
        elif rr.size == 1:
            consistency = 0.5
        else:
            consistency = 0.0
        confidence = float(np.clip(0.35 * snr_factor + 0.35 * purity + 0.3 * consistency, 0.0, 1.0))
        return HeartRateEstimate(bpm=float(bpm), confidence=confidence, source=source)

    # ------------------------------------------------------------------
    # SpO2 / blood pressure / perfusion
    # ------------------------------------------------------------------

    def compute_spo2(self, ppg: PPGSignal) -> Spo2Estimate:
        """
        Ratio-of-ratios oxygen saturation.

        The result is always inside ``spo2_range`` (default 70 – 100 %),
        whatever the AC/DC ratios look like.
        """
        cfg = self._config
        low, high = cfg.spo2_range
        ac_red, dc_red = self._channel_split(ppg, "red")
        ac_ir, dc_ir = self._channel_split(ppg, "infrared")

        rms_red = float(np.sqrt(np.mean(ac_red ** 2))) if ac_red.size else 0.0
        rms_ir = float(np.sqrt(np.mean(ac_ir ** 2))) if ac_ir.size else 0.0
        mean_dc_red = float(np.mean(np.abs(dc_red))) if dc_red.size else 0.0
        mean_dc_ir = float(np.mean(np.abs(dc_ir))) if dc_ir.size else 0.0

        degenerate = min(rms_red, rms_ir, mean_dc_red, mean_dc_ir) < _EPS
        ratio_red = rms_red / max(mean_dc_red, _EPS)
        ratio_ir = rms_ir / max(mean_dc_ir, _EPS)
        r = ratio_red / max(ratio_ir, _EPS)

        raw = cfg.spo2_a - cfg.spo2_b * r
        if not np.isfinite(raw):
            raw = low
            degenerate = True
        value = float(np.clip(raw, low, high))

        if degenerate:
            confidence = 0.0
        else:
            in_range = 1.0 if low <= raw <= high else 0.5
            confidence = float(np.clip(ppg.mean_quality * in_range, 0.0, 1.0))
        return Spo2Estimate(value=value, ratio=float(r) if np.isfinite(r) else 0.0,
                            confidence=confidence)

    def compute_blood_pressure(
        self,
        heart_rate: float,
        waveform: Optional[PulseWaveform] = None,
        quality: float = 1.0,
    ) -> BloodPressure:
        """
        Cuffless blood-pressure heuristic from pulse transit time and HR.

        Returns zeros with zero confidence when either input is missing.
        Diastolic pressure is forced at least ``min_pulse_pressure`` below
        systolic.
        """
        if waveform is None or heart_rate <= 0:
            return BloodPressure(systolic=0.0, diastolic=0.0, confidence=0.0)
        cfg = self._config
        ptt_low, ptt_high = cfg.bp_ptt_range_s
        ptt = float(np.clip(waveform.rise_time, ptt_low, ptt_high))
        pwv = cfg.bp_path_length_m / ptt

        c1, c2, c3 = cfg.bp_systolic_coeffs
        d1, d2, d3 = cfg.bp_diastolic_coeffs
        systolic = float(np.clip(c1 * pwv + c2 * heart_rate + c3, *cfg.systolic_range))
        diastolic = float(np.clip(d1 * pwv + d2 * heart_rate + d3, *cfg.diastolic_range))
        if diastolic > systolic - cfg.min_pulse_pressure:
            diastolic = systolic - cfg.min_pulse_pressure

        ptt_plausible = 1.0 if ptt_low < waveform.rise_time < ptt_high else 0.0
        confidence = float(np.clip(0.6 * quality + 0.2 * ptt_plausible, 0.0, 0.8))
        return BloodPressure(systolic=systolic, diastolic=diastolic, confidence=confidence)

    def compute_perfusion_index(self, ppg: PPGSignal) -> float:
        """Peak-to-peak AC over mean DC of the primary channel, in %."""
        if len(ppg) < 2:
            return 0.0
        ac = np.asarray(ppg.ac_component)
        dc = float(np.mean(np.abs(ppg.dc_component)))
        if dc < _EPS:
            return 0.0
        swing = float(np.percentile(ac, 95) - np.percentile(ac, 5))
        return float(np.clip(100.0 * swing / dc, 0.02, 20.0))

    # ------------------------------------------------------------------
    # HRV / arrhythmia
    # ------------------------------------------------------------------

    def compute_hrv(self, rr_intervals: RRInput) -> HRVMetrics:
        """
        Time-domain, Poincaré and frequency-domain HRV.

        Fewer than two intervals gives an all-zero record.  The LF/HF
        split needs at least ``min_rr_intervals``; below that the spectral
        fields stay zero.
        """
        rr = np.asarray(rr_intervals, dtype=np.float64)
        rr = rr[np.isfinite(rr)]
        if rr.size < 2:
            return HRVMetrics()
        cfg = self._config

        diffs = np.diff(rr)
        mean_rr = float(np.mean(rr))
        sdnn = float(np.std(rr, ddof=1))
        rmssd = float(np.sqrt(np.mean(diffs ** 2)))
        pnn50 = float(100.0 * np.mean(np.abs(diffs) > 50.0))

        if diffs.size >= 2:
            sd1 = float(np.sqrt(0.5) * np.std(diffs, ddof=1))
        else:
            sd1 = rmssd / np.sqrt(2.0)
        sd2 = float(np.sqrt(max(2.0 * sdnn ** 2 - sd1 ** 2, 0.0)))

        bins = max(1, int(np.ceil((rr.max() - rr.min()) / _HISTOGRAM_BIN_MS)))
        counts, _ = np.histogram(rr, bins=bins)
        triangular = float(rr.size / counts.max()) if counts.max() > 0 else 0.0

        lf = hf = ratio = 0.0
        if rr.size >= cfg.min_rr_intervals:
            lf, hf = self._lf_hf_power(rr)
            ratio = lf / hf if hf > 0 else 0.0

        return HRVMetrics(
            mean_rr=mean_rr,
            sdnn=sdnn,
            rmssd=rmssd,
            pnn50=pnn50,
            lf_power=lf,
            hf_power=hf,
            lf_hf_ratio=ratio,
            sd1=sd1,
            sd2=sd2,
            triangular_index=triangular,
            confidence=float(np.clip(rr.size / 30.0, 0.0, 1.0)),
        )

    def classify_arrhythmia(
        self,
        rr_intervals: RRInput,
        hrv: Optional[HRVMetrics] = None,
    ) -> ArrhythmiaAnalysis:
        """
        Rule-based rhythm classification.

        Irregular rhythms are checked first (AF-like, then premature
        beats), then rate (brady / tachy), then sinus arrhythmia.
        """
        rr = np.asarray(rr_intervals, dtype=np.float64)
        rr = rr[np.isfinite(rr) & (rr > 0)]
        if rr.size < 2:
            return ArrhythmiaAnalysis()
        cfg = self._config
        if hrv is None:
            hrv = self.compute_hrv(rr)

        heart_rate = 60000.0 / float(np.mean(rr))
        median = float(np.median(rr))
        abnormal = np.abs(rr - median) > 0.2 * median
        abnormal_pct = float(100.0 * np.mean(abnormal))
        premature = int(np.sum(rr < cfg.premature_ratio * median))

        if hrv.rmssd > 100.0 and hrv.pnn50 > 30.0:
            kind = ArrhythmiaType.ATRIAL_FIBRILLATION
        elif premature > 0:
            kind = ArrhythmiaType.PREMATURE_BEATS
        elif heart_rate < cfg.bradycardia_bpm:
            kind = ArrhythmiaType.BRADYCARDIA
        elif heart_rate > cfg.tachycardia_bpm:
            kind = ArrhythmiaType.TACHYCARDIA
        elif hrv.sdnn > 100.0:
            kind = ArrhythmiaType.SINUS_ARRHYTHMIA
        else:
            kind = ArrhythmiaType.NONE

        severity = self._severity(kind, abnormal_pct, hrv.lf_hf_ratio)

        rhythm = min(100.0, abnormal_pct * 2.0)
        rate = min(100.0, max(0.0, cfg.bradycardia_bpm - heart_rate) * 2.5
                   + max(0.0, heart_rate - cfg.tachycardia_bpm) * 1.5)
        irregularity = min(100.0, hrv.rmssd / 2.0)
        autonomic = min(100.0, max(0.0, hrv.lf_hf_ratio - 2.0) * 20.0)
        risk = float(np.clip(0.4 * rhythm + 0.25 * rate + 0.2 * irregularity + 0.15 * autonomic,
                             0.0, 100.0))

        return ArrhythmiaAnalysis(
            type=kind,
            severity=severity,
            risk_score=risk,
            abnormal_beats_percentage=abnormal_pct,
            confidence=float(np.clip(rr.size / 20.0, 0.0, 1.0)),
        )

    # ------------------------------------------------------------------
    # Respiration / stress
    # ------------------------------------------------------------------

    def estimate_respiration_rate(self, ppg: PPGSignal) -> RespirationEstimate:
        """
        Breathing rate from respiratory amplitude modulation of the pulse.

        Needs at least 8 s of signal; shorter input gives a zero estimate.
        """
        cfg = self._config
        fs = ppg.sampling_rate
        if len(ppg) < max(_MIN_BIOMETRIC_SAMPLES, int(fs * _RESPIRATION_MIN_SECONDS)):
            return RespirationEstimate(rate=0.0, confidence=0.0)

        low, high = cfg.cutoff_band
        pulse = self._engine.bandpass_filter(ppg.pulse_signal, low, high, fs, cfg.filter_order)
        envelope = np.abs(hilbert(pulse))
        resp_low, resp_high = cfg.respiration_band
        breathing = self._engine.bandpass_filter(envelope, resp_low, resp_high, fs, order=2)
        spectrum = self._engine.spectral_analysis(breathing, sampling_rate=fs,
                                                  band=cfg.respiration_band)
        if spectrum.dominant_frequency <= 0:
            return RespirationEstimate(rate=0.0, confidence=0.0)
        confidence = 0.5 * spectrum.spectral_purity + 0.5 * float(
            np.clip(spectrum.snr / 20.0, 0.0, 1.0))
        return RespirationEstimate(rate=spectrum.dominant_frequency * 60.0,
                                   confidence=float(np.clip(confidence, 0.0, 1.0)))

    @staticmethod
    def compute_stress_index(hrv: HRVMetrics, perfusion_index: float) -> float:
        """
        Composite 0 – 100 stress score.

        Low RMSSD, low perfusion and a high LF/HF ratio all push it up.
        """
        if hrv.confidence <= 0 or hrv.rmssd <= 0:
            return 0.0
        hrv_stress = 1000.0 / max(0.001, hrv.rmssd)
        perfusion_stress = max(0.0, 10.0 - perfusion_index)
        lf_hf_stress = max(0.0, hrv.lf_hf_ratio - 2.0)
        return float(min(100.0, 0.4 * hrv_stress + 0.3 * perfusion_stress + 0.3 * lf_hf_stress))

    # ------------------------------------------------------------------
    # Experimental
    # ------------------------------------------------------------------

    def estimate_glucose(self, ppg: PPGSignal) -> GlucoseEstimate:
        """
        EXPERIMENTAL glucose regression on pulsatile channel absorbance.

        Not a clinical measurement.  Confidence is capped at 0.5 and
        scales with how coherently the four channels pulse together.
        """
        if len(ppg) < 2:
            return GlucoseEstimate(value=0.0, confidence=0.0)
        series = {name: np.asarray(getattr(ppg, name)) for name in _GLUCOSE_WEIGHTS}
        value = _GLUCOSE_INTERCEPT
        for name, weight in _GLUCOSE_WEIGHTS.items():
            pulsatile = float(np.std(series[name])) * 1000.0
            value += weight * pulsatile
        value *= 1.0 + _GLUCOSE_TEMP_COEFF * (_AMBIENT_TEMP_C - _BODY_TEMP_C)
        value = float(np.clip(value, *_GLUCOSE_RANGE))

        stacked = np.column_stack([series[name] for name in _GLUCOSE_WEIGHTS])
        pca = self._engine.principal_components(stacked)
        coherence = float(pca.explained_variance[0]) if pca.explained_variance.size else 0.0
        confidence = min(_EXPERIMENTAL_MAX_CONFIDENCE,
                         _EXPERIMENTAL_MAX_CONFIDENCE * coherence * ppg.mean_quality)
        return GlucoseEstimate(value=value, confidence=float(confidence))

    def estimate_hemoglobin(self, ppg: PPGSignal, spo2: Optional[float] = None) -> HemoglobinEstimate:
        """
        EXPERIMENTAL haemoglobin concentration from red / infra-red attenuation.

        Each channel's attenuation is ``ln((AC_pp + DC) / DC)``.  The mean of
        the two is scaled against a reference attenuation, then corrected
        by the Beer–Lambert extinction of the blood at saturation *spo2*
        (percent; computed from *ppg* when omitted).  Not a clinical
        measurement; confidence is capped at 0.5.
        """
        low, high = _HEMOGLOBIN_RANGE
        if spo2 is None:
            spo2 = self.compute_spo2(ppg).value
        attenuations = []
        for name in ("red", "infrared"):
            ac, dc = self._channel_split(ppg, name)
            mean_dc = float(np.mean(np.abs(dc))) if dc.size else 0.0
            swing = float(np.ptp(ac)) if ac.size else 0.0
            if mean_dc < _EPS or swing <= 0.0:
                return HemoglobinEstimate(value=low, confidence=0.0)
            attenuations.append(np.log((swing + mean_dc) / mean_dc))

        saturation = float(np.clip(spo2 / 100.0, 0.0, 1.0))
        correction = _extinction(_REFERENCE_SATURATION) / _extinction(saturation)
        value = _HEMOGLOBIN_REFERENCE * float(np.mean(attenuations)) / _REFERENCE_ATTENUATION
        value = float(np.clip(value * correction, low, high))
        confidence = min(_EXPERIMENTAL_MAX_CONFIDENCE, _EXPERIMENTAL_MAX_CONFIDENCE * ppg.mean_quality)
        return HemoglobinEstimate(value=value, confidence=float(confidence))

    def estimate_lipids(
        self,
        waveform: Optional[PulseWaveform],
        heart_rate: float,
    ) -> LipidEstimate:
        """EXPERIMENTAL lipid profile from arterial-stiffness proxies."""
        if waveform is None or heart_rate <= 0:
            return LipidEstimate(total_cholesterol=0.0, triglycerides=0.0, confidence=0.0)
        cfg = self._config
        ptt = float(np.clip(waveform.rise_time, *cfg.bp_ptt_range_s))
        pwv = cfg.bp_path_length_m / ptt

        compliance = float(np.clip(1.0 - waveform.augmentation_index / 100.0, 0.0, 1.0))
        resistance = pwv / 10.0
        reflection = float(np.clip(waveform.reflection_index / 100.0, 0.0, 1.0))
        haemodynamic = float(np.clip(heart_rate / 100.0, 0.0, 2.0))

        cholesterol = 180.0 + compliance * 50.0 + reflection * 30.0
        triglycerides = 120.0 + resistance * 40.0 + haemodynamic * 25.0
        return LipidEstimate(
            total_cholesterol=float(np.clip(cholesterol, *_CHOLESTEROL_RANGE)),
            triglycerides=float(np.clip(triglycerides, *_TRIGLYCERIDE_RANGE)),
            confidence=float(min(_EXPERIMENTAL_MAX_CONFIDENCE, 0.2 + 0.3 * reflection)),
        )

    # ------------------------------------------------------------------
    # Aggregate
    # ------------------------------------------------------------------

    def compute_biometrics(
        self,
        ppg: PPGSignal,
        waveform: Optional[PulseWaveform] = None,
        include_experimental: bool = False,
    ) -> BiometricResult:
        """
        Run every estimator over *ppg* and bundle the results.

        Raises
        ------
        SignalTooShort
            *ppg* has fewer than 4 samples.
        """
        if len(ppg) < _MIN_BIOMETRIC_SAMPLES:
            raise SignalTooShort(len(ppg), _MIN_BIOMETRIC_SAMPLES, "compute_biometrics")
        cfg = self._config
        fs = ppg.sampling_rate
        low, high = cfg.cutoff_band

        pulse = ppg.pulse_signal
        spectrum = self._engine.spectral_analysis(pulse, sampling_rate=fs, band=cfg.cutoff_band)
        filtered = self._engine.bandpass_filter(pulse, low, high, fs, cfg.filter_order)
        rr = self.extract_rr_intervals(filtered, sampling_rate=fs)

        heart_rate = self.compute_heart_rate(rr, spectrum)
        trend = self._heart_rate_trend(heart_rate.bpm)
        spo2 = self.compute_spo2(ppg)
        quality = ppg.mean_quality
        blood_pressure = self.compute_blood_pressure(heart_rate.bpm, waveform, quality)
        hrv = self.compute_hrv(rr)
        arrhythmia = self.classify_arrhythmia(rr, hrv)
        perfusion = self.compute_perfusion_index(ppg)
        respiration = self.estimate_respiration_rate(ppg)
        stress = self.compute_stress_index(hrv, perfusion)

        confidences: Dict[str, float] = {
            "heart_rate": heart_rate.confidence,
            "spo2": spo2.confidence,
            "blood_pressure": blood_pressure.confidence,
            "hrv": hrv.confidence,
            "arrhythmia": arrhythmia.confidence,
            "respiration": respiration.confidence,
            "signal_quality": quality,
        }

        glucose = lipids = hemoglobin = None
        if include_experimental:
            glucose = self.estimate_glucose(ppg)
            lipids = self.estimate_lipids(waveform, heart_rate.bpm)
            hemoglobin = self.estimate_hemoglobin(ppg, spo2.value)
            confidences["glucose"] = glucose.confidence
            confidences["lipids"] = lipids.confidence
            confidences["hemoglobin"] = hemoglobin.confidence

        logger.debug("Biometrics: HR=%.1f (%s, conf=%.2f) SpO2=%.1f BP=%.0f/%.0f",
                     heart_rate.bpm, heart_rate.source, heart_rate.confidence,
                     spo2.value, blood_pressure.systolic, blood_pressure.diastolic)

        return BiometricResult(
            heart_rate=heart_rate,
            spo2=spo2,
            blood_pressure=blood_pressure,
            hrv=hrv,
            arrhythmia=arrhythmia,
            perfusion_index=perfusion,
            respiration=respiration,
            stress_index=stress,
            timestamp=int(ppg.timestamps[-1]),
            heart_rate_trend=trend,
            glucose=glucose,
            lipids=lipids,
            hemoglobin=hemoglobin,
            confidences=confidences,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_config(base: VitalsConfig, changes: dict) -> VitalsConfig:
        try:
            config = dataclasses.replace(base, **changes) if changes else base
        except TypeError as e:
            raise InvalidParameter(str(e), parameter="config") from e
        config.validate()
        return config

    def _valid_rr(self, rr_intervals: RRInput) -> np.ndarray:
        rr = np.asarray(rr_intervals, dtype=np.float64)
        low, high = self._config.rr_range_ms
        return rr[np.isfinite(rr) & (rr >= low) & (rr <= high)]

    @staticmethod
    def _channel_split(ppg: PPGSignal, name: str) -> Tuple[np.ndarray, np.ndarray]:
        if name in ppg.channel_ac and name in ppg.channel_dc:
            return np.asarray(ppg.channel_ac[name]), np.asarray(ppg.channel_dc[name])
        transmittance = np.power(10.0, -np.asarray(getattr(ppg, name), dtype=np.float64))
        dc = centred_moving_average(transmittance, 31)
        return transmittance - dc, dc

    def _lf_hf_power(self, rr: np.ndarray) -> Tuple[float, float]:
        """LF and HF power (ms²) of the evenly resampled tachogram."""
        cfg = self._config
        beat_times = np.cumsum(rr) / 1000.0
        grid = np.arange(beat_times[0], beat_times[-1], 1.0 / cfg.tachogram_rate)
        if grid.size < 4:
            return 0.0, 0.0
        tachogram = np.interp(grid, beat_times, rr)
        spectrum = self._engine.spectral_analysis(
            tachogram, sampling_rate=cfg.tachogram_rate,
            band=(cfg.lf_band[0], cfg.hf_band[1]),
        )
        return spectrum.band_power(*cfg.lf_band), spectrum.band_power(*cfg.hf_band)

    @staticmethod
    def _severity(kind: ArrhythmiaType, abnormal_pct: float, lf_hf: float) -> ArrhythmiaSeverity:
        if kind is ArrhythmiaType.NONE:
            return ArrhythmiaSeverity.NONE
        levels = [ArrhythmiaSeverity.NONE, ArrhythmiaSeverity.MILD,
                  ArrhythmiaSeverity.MODERATE, ArrhythmiaSeverity.SEVERE]

        def grade(value: float, mild: float, moderate: float, severe: float) -> int:
            if value > severe:
                return 3
            if value > moderate:
                return 2
            if value > mild:
                return 1
            return 0

        level = max(grade(abnormal_pct, 5.0, 10.0, 20.0), grade(lf_hf, 2.0, 3.0, 5.0), 1)
        return levels[level]

    def _heart_rate_trend(self, bpm: float) -> float:
        """Kalman-smoothed heart rate carried across calls."""
        if bpm <= 0:
            return 0.0
        try:
            return float(self._engine.kalman_filter([bpm], stream_key="heart_rate")[-1])
        except SingularMatrix as e:
            logger.warning("Heart-rate trend unavailable: %s", e)
            return bpm
