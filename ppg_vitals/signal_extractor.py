"""
PPG signal extractor.

Algorithm
---------
1. Reduce every frame to its mean red / green / blue intensity.
2. Calibration: the first ``calibration_frames`` frames of a session fix
   the per-channel reference intensity I₀.  Until then a provisional
   baseline (the mean so far) is used and quality is reported as 0.
3. Beer–Lambert absorbance ``A = −log10(I / I₀)`` per channel; the
   infra-red channel is synthesised by an :class:`InfraredModel`.
4. AC/DC split per channel on transmittance ``T = 10^−A`` using a centred
   moving average (DC) and its residual (AC).
5. Pulsatility ``PI = |AC| / |DC| × 100 %``, clamped to a physiological band.
6. Per-sample quality from AC amplitude, upstream finger confidence,
   upstream frame quality and sample-to-sample stability.

Pulse-waveform characterisation picks the most prominent beat of a
signal and measures its morphology (onset, systolic peak, dicrotic
notch, rise / fall times, augmentation and reflection indices).

References
----------
- Allen J., "Photoplethysmography and its application in clinical
  physiological measurement." Physiol. Meas., 2007.
- Elgendi M., "On the analysis of fingertip photoplethysmogram signals."
  Curr. Cardiol. Rev., 2012.
"""

from __future__ import annotations

import dataclasses
import logging
from enum import Enum
from typing import Dict, Optional, Sequence, Union

import numpy as np
from scipy.signal import find_peaks

from ppg_vitals.config import ExtractionConfig
from ppg_vitals.exceptions import (
    InsufficientFrames,
    InvalidInput,
    InvalidParameter,
    NoPeaksFound,
    SignalTooShort,
)
from ppg_vitals.infrared import InfraredModel, LinearInfraredModel
from ppg_vitals.models import (
    CalibrationBaseline,
    FrameSample,
    FrequencySpectrum,
    PPGSignal,
    PulseWaveform,
)
from ppg_vitals.numerical_engine import NumericalEngine

logger = logging.getLogger(__name__)

_CHANNELS = ("red", "green", "blue")
_MIN_WAVEFORM_SAMPLES = 10

# Quality blend weights
_W_AMPLITUDE = 0.3
_W_FINGER    = 0.3
_W_FRAME     = 0.2
_W_STABILITY = 0.2


class ExtractorState(Enum):
    CALIBRATING = "calibrating"
    ACTIVE      = "active"


def centred_moving_average(values: np.ndarray, width: int) -> np.ndarray:
    """
    Centred moving average that shrinks its window at the edges.

    The window is clipped to the signal length (kept odd) so the output
    always has ``len(values)`` samples.
    """
    n = len(values)
    width = min(int(width), n if n % 2 else n - 1)
    width = max(width, 1)
    kernel = np.ones(width)
    sums = np.convolve(values, kernel, mode="same")
    counts = np.convolve(np.ones(n), kernel, mode="same")
    return sums / counts


class SignalExtractor:
    """
    Calibrated PPG extraction from per-frame channel intensities.

    Parameters
    ----------
    config:
        Extraction configuration.  Defaults to :class:`ExtractionConfig()`.
    engine:
        Shared :class:`NumericalEngine`.  A private one is created if omitted.
    infrared_model:
        Source of the infra-red absorbance series.  Defaults to
        :class:`LinearInfraredModel` with ``config.infrared_weights``.
    **overrides:
        Individual config fields applied on top of *config*.
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        engine: Optional[NumericalEngine] = None,
        infrared_model: Optional[InfraredModel] = None,
        **overrides,
    ) -> None:
        self._config = self._merge_config(config or ExtractionConfig(), overrides)
        self._engine = engine or NumericalEngine(sampling_rate=self._config.sampling_rate)
        self._custom_infrared = infrared_model is not None
        self._infrared = infrared_model or LinearInfraredModel(self._config.infrared_weights)

        self._state = ExtractorState.CALIBRATING
        self._calib_sum = np.zeros(3)
        self._calib_count = 0
        self._baseline: Optional[CalibrationBaseline] = None
        self._frames_seen = 0
        self._last_quality = 0.0

    # ------------------------------------------------------------------
    # Configuration / state
    # ------------------------------------------------------------------

    @property
    def state(self) -> ExtractorState:
        return self._state

    @property
    def baseline(self) -> Optional[CalibrationBaseline]:
        return self._baseline

    @property
    def calibration_progress(self) -> float:
        """How much of the calibration window has been collected (0 – 1)."""
        if self._baseline is not None:
            return 1.0
        return self._calib_count / self._config.calibration_frames

    @property
    def last_quality(self) -> float:
        return self._last_quality

    @property
    def statistics(self) -> Dict[str, object]:
        return {
            "state": self._state.value,
            "calibration_progress": self.calibration_progress,
            "frames_seen": self._frames_seen,
            "last_mean_quality": self._last_quality,
            "baseline": None if self._baseline is None else (
                self._baseline.red, self._baseline.green, self._baseline.blue
            ),
        }

    def get_config(self) -> ExtractionConfig:
        return self._config

    def update_config(self, **changes) -> ExtractionConfig:
        """Apply configuration changes, effective on the next call."""
        self._config = self._merge_config(self._config, changes)
        if not self._custom_infrared:
            self._infrared = LinearInfraredModel(self._config.infrared_weights)
        self._engine.reset()
        return self._config

    def reset(self) -> None:
        """Forget the calibration and return to CALIBRATING."""
        self._state = ExtractorState.CALIBRATING
        self._calib_sum = np.zeros(3)
        self._calib_count = 0
        self._baseline = None
        self._frames_seen = 0
        self._last_quality = 0.0
        logger.info("Signal extractor reset; recalibrating.")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(self, frames: Sequence[FrameSample]) -> PPGSignal:
        """
        Convert *frames* into a :class:`PPGSignal`.

        Every series of the result has ``len(frames)`` samples.

        Raises
        ------
        InsufficientFrames
            *frames* is empty.
        InvalidInput
            A frame has an empty channel or non-finite intensities.
        """
        frames = list(frames)
        if not frames:
            raise InsufficientFrames()
        cfg = self._config
        n = len(frames)

        intensities = np.empty((n, 3))
        for i, frame in enumerate(frames):
            for name in _CHANNELS:
                if np.size(getattr(frame, name)) == 0:
                    raise InvalidInput(f"Frame {i} has an empty {name} channel",
                                       details={"frame": i, "channel": name})
            intensities[i] = frame.mean_intensities()
        if not np.all(np.isfinite(intensities)):
            raise InvalidInput("Frame intensities contain non-finite values")

        calibrating = self._feed_calibration(intensities)
        reference = self._reference_intensity()

        safe = np.maximum(intensities, cfg.min_intensity)
        absorbance = -np.log10(safe / np.maximum(reference, cfg.min_intensity))
        channels = {name: absorbance[:, c] for c, name in enumerate(_CHANNELS)}
        channels["infrared"] = np.asarray(
            self._infrared.estimate(channels["red"], channels["green"], channels["blue"]),
            dtype=np.float64,
        )

        channel_ac: Dict[str, np.ndarray] = {}
        channel_dc: Dict[str, np.ndarray] = {}
        for name, series in channels.items():
            transmittance = np.power(10.0, -series)
            dc = centred_moving_average(transmittance, cfg.dc_window)
            channel_dc[name] = dc
            channel_ac[name] = transmittance - dc

        ac = channel_ac[cfg.primary_channel]
        dc = channel_dc[cfg.primary_channel]
        safe_dc = np.where(np.abs(dc) > 1e-12, np.abs(dc), 1e-12)
        low_pi, high_pi = cfg.pulsatility_range
        pulsatility = np.clip(np.abs(ac) / safe_dc * 100.0, low_pi, high_pi)

        quality = self._quality(frames, intensities, ac / safe_dc)
        quality[calibrating] = 0.0

        self._frames_seen += n
        self._last_quality = float(quality.mean())
        if self._state is ExtractorState.ACTIVE and self._last_quality < cfg.quality_threshold:
            logger.warning("Low PPG signal quality: %.2f (threshold %.2f)",
                           self._last_quality, cfg.quality_threshold)

        return PPGSignal(
            red=channels["red"],
            green=channels["green"],
            blue=channels["blue"],
            infrared=channels["infrared"],
            ac_component=ac,
            dc_component=dc,
            pulsatility_index=pulsatility,
            quality=quality,
            timestamps=np.array([f.timestamp for f in frames], dtype=np.float64),
            sampling_rate=cfg.sampling_rate,
            primary_channel=cfg.primary_channel,
            channel_ac=channel_ac,
            channel_dc=channel_dc,
            baseline=self._baseline,
        )

    def extract_pulse_waveform(
        self, signal: Union[PPGSignal, Sequence[float], np.ndarray]
    ) -> PulseWaveform:
        """
        Characterise the most prominent pulse in *signal*.

        Parameters
        ----------
        signal:
            A :class:`PPGSignal` (its ``pulse_signal`` is used) or a 1-D
            pulse series with systolic peaks pointing up.

        Raises
        ------
        SignalTooShort
            Fewer than 10 samples.
        NoPeaksFound
            No peak with non-zero prominence.
        """
        if isinstance(signal, PPGSignal):
            x = np.asarray(signal.pulse_signal, dtype=np.float64)
            fs = signal.sampling_rate
        else:
            x = np.asarray(signal, dtype=np.float64)
            fs = self._config.sampling_rate
        if x.ndim != 1:
            raise InvalidInput(f"Expected a 1-D pulse signal, got shape {x.shape}")
        if len(x) < _MIN_WAVEFORM_SAMPLES:
            raise SignalTooShort(len(x), _MIN_WAVEFORM_SAMPLES, "extract_pulse_waveform")
        if not np.all(np.isfinite(x)):
            raise InvalidInput("Pulse signal contains non-finite values")

        cfg = self._config
        distance = max(3, int(round(fs * cfg.peak_min_distance_s)))
        peaks, props = find_peaks(x, distance=distance, prominence=0)
        prominences = props.get("prominences", np.array([]))
        if peaks.size == 0 or not np.any(prominences > 0):
            raise NoPeaksFound(length=len(x))

        k = int(np.argmax(prominences))
        peak = int(peaks[k])
        # The pulse spans the troughs on either side, bounded by its neighbours
        prev_peak = int(peaks[k - 1]) if k > 0 else 0
        next_peak = int(peaks[k + 1]) if k + 1 < peaks.size else len(x) - 1
        left = prev_peak + int(np.argmin(x[prev_peak:peak + 1]))
        right = peak + int(np.argmin(x[peak:next_peak + 1]))
        systolic = float(x[peak])

        base = float(x[left])
        amplitude = systolic - base
        if amplitude <= 0:
            amplitude = float(prominences[k])
            base = systolic - amplitude
        base_right = float(x[right])
        amplitude_right = max(systolic - base_right, 1e-12)

        onset = peak
        threshold = base + cfg.onset_fraction * amplitude
        while onset > left and x[onset] > threshold:
            onset -= 1
        # Offset: last sample above threshold before the right trough
        end = right
        threshold = base_right + cfg.onset_fraction * amplitude_right
        while end > peak and x[end] <= threshold:
            end -= 1
        end = min(end + 1, right)

        t10 = self._crossing(x, left, peak, base + 0.1 * amplitude, rising=True)
        t90 = self._crossing(x, left, peak, base + 0.9 * amplitude, rising=True)
        d90 = self._crossing(x, peak, right, base_right + 0.9 * amplitude_right, rising=False)
        d10 = self._crossing(x, peak, right, base_right + 0.1 * amplitude_right, rising=False)

        notch = self._find_notch(x, peak, end, max(3, int(round(fs * cfg.notch_search_s))))
        diastolic = float(np.max(x[notch:end + 1])) if notch <= end else float(x[notch])

        return PulseWaveform(
            systolic_peak=systolic,
            systolic_index=peak,
            onset_index=int(onset),
            end_index=int(end),
            dicrotic_notch_index=int(notch),
            diastolic_peak=diastolic,
            amplitude=amplitude,
            width=(end - onset) / fs,
            rise_time=max(0.0, t90 - t10) / fs,
            fall_time=max(0.0, d10 - d90) / fs,
            augmentation_index=100.0 * (systolic - float(x[notch])) / amplitude,
            reflection_index=100.0 * (diastolic - base) / amplitude,
        )

    def analyze_spectrum(self, ppg: PPGSignal) -> FrequencySpectrum:
        """Spectrum of the most recent ``window_size`` samples of the pulse."""
        pulse = ppg.pulse_signal[-self._config.window_size:]
        return self._engine.spectral_analysis(
            pulse, sampling_rate=ppg.sampling_rate, band=self._config.cutoff_band
        )

    def filtered_pulse(self, ppg: PPGSignal) -> np.ndarray:
        """Band-passed pulse signal (cutoff band and order from the config)."""
        low, high = self._config.cutoff_band
        return self._engine.bandpass_filter(
            ppg.pulse_signal, low, high,
            sampling_rate=ppg.sampling_rate, order=self._config.filter_order,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_config(base: ExtractionConfig, changes: dict) -> ExtractionConfig:
        try:
            config = dataclasses.replace(base, **changes) if changes else base
        except TypeError as e:
            raise InvalidParameter(str(e), parameter="config") from e
        config.validate()
        return config

    def _feed_calibration(self, intensities: np.ndarray) -> np.ndarray:
        """Accumulate calibration frames; return a mask of samples taken while calibrating."""
        calibrating = np.zeros(len(intensities), dtype=bool)
        if self._baseline is not None:
            return calibrating
        target = self._config.calibration_frames
        for i, row in enumerate(intensities):
            calibrating[i] = True
            self._calib_sum += row
            self._calib_count += 1
            if self._calib_count >= target:
                mean = self._calib_sum / self._calib_count
                self._baseline = CalibrationBaseline(
                    red=float(mean[0]), green=float(mean[1]), blue=float(mean[2]),
                    n_frames=self._calib_count,
                )
                self._state = ExtractorState.ACTIVE
                logger.info("Calibration complete after %d frames: I0=(%.1f, %.1f, %.1f)",
                            self._calib_count, mean[0], mean[1], mean[2])
                break
        return calibrating

    def _reference_intensity(self) -> np.ndarray:
        if self._baseline is not None:
            b = self._baseline
            return np.array([b.red, b.green, b.blue])
        # Provisional baseline while calibrating
        return self._calib_sum / max(self._calib_count, 1)

    def _quality(
        self,
        frames: Sequence[FrameSample],
        intensities: np.ndarray,
        relative_ac: np.ndarray,
    ) -> np.ndarray:
        cfg = self._config

        rms = np.sqrt(centred_moving_average(relative_ac ** 2, cfg.dc_window))
        ref = cfg.reference_amplitude
        artifact = 10.0 * ref
        amplitude = np.clip(rms / ref, 0.0, 1.0)
        amplitude = np.where(rms > artifact, artifact / np.maximum(rms, 1e-12), amplitude)

        finger = np.clip([f.upstream.finger_confidence for f in frames], 0.0, 1.0)
        frame_q = np.clip([f.upstream.overall_quality / 100.0 for f in frames], 0.0, 1.0)

        brightness = intensities.sum(axis=1)
        previous = np.empty_like(brightness)
        previous[1:] = brightness[:-1]
        # Stability only compares frames within this batch
        previous[0] = brightness[0]
        step = np.abs(brightness - previous) / np.maximum(previous, 1e-6)
        stability = np.clip(1.0 - step / cfg.stability_limit, 0.0, 1.0)

        quality = (_W_AMPLITUDE * amplitude + _W_FINGER * finger
                   + _W_FRAME * frame_q + _W_STABILITY * stability)
        return np.clip(quality, 0.0, 1.0)

    @staticmethod
    def _crossing(x: np.ndarray, start: int, stop: int, level: float, rising: bool) -> float:
        """Fractional index where *x* first crosses *level* between *start* and *stop*."""
        for i in range(start, stop):
            a, b = x[i], x[i + 1]
            hit = (a < level <= b) if rising else (a > level >= b)
            if hit:
                return i + (level - a) / (b - a)
        return float(stop if rising else start)

    @staticmethod
    def _find_notch(x: np.ndarray, peak: int, end: int, search: int) -> int:
        stop = min(end, peak + search, len(x) - 1)
        for i in range(peak + 1, stop):
            if x[i] < x[i - 1] and x[i] <= x[i + 1]:
                return i
        if stop <= peak + 1:
            return min(peak + 1, len(x) - 1)
        # No local minimum: take the flattest point of the descending limb
        slopes = np.abs(np.diff(x[peak:stop + 1]))
        return peak + 1 + int(np.argmin(slopes[1:])) if len(slopes) > 1 else peak + 1
