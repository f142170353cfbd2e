"""
Numerical engine: the signal-processing primitives every other component
is built from.

Algorithm
---------
1. Spectral analysis: mean removal, a selectable taper window, zero
   padding to the next power of two, then an *iterative* radix-2
   Cooley–Tukey FFT (bit-reversal permutation followed by log2(N)
   vectorised butterfly stages).
2. Kalman filtering: a constant-velocity two-state model per named
   stream; state survives between calls for the same stream key.
3. Savitzky–Golay smoothing: least-squares polynomial convolution with
   odd edge reflection (linear trends pass through unchanged).
4. Peak detection: SG smoothing, local maxima, prominence and half-height
   width, then greedy highest-prominence selection under a minimum
   spacing constraint.
5. Principal components: symmetric eigendecomposition of the covariance
   matrix.

The engine is stateless apart from three bounded caches: Kalman states,
SG coefficients and Butterworth designs.  ``reset()`` and
``update_config()`` clear all of them.

References
----------
- Cooley J.W., Tukey J.W., "An algorithm for the machine calculation of
  complex Fourier series." Math. Comp., 1965.
- Savitzky A., Golay M.J.E., "Smoothing and differentiation of data by
  simplified least squares procedures." Anal. Chem., 1964.
- Harris F.J., "On the use of windows for harmonic analysis with the
  discrete Fourier transform." Proc. IEEE, 1978.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.signal import (
    butter,
    find_peaks,
    peak_prominences,
    peak_widths,
    savgol_coeffs,
    sosfilt,
    sosfiltfilt,
)

from ppg_vitals.config import EngineConfig, WindowType
from ppg_vitals.exceptions import (
    InvalidInput,
    InvalidParameter,
    SignalTooShort,
    SingularMatrix,
)
from ppg_vitals.models import FrequencySpectrum, KalmanFilterState, PCAResult, Peak

logger = logging.getLogger(__name__)

# Main-lobe half-width of each taper, in bins of the *unpadded* length.
_MAIN_LOBE_BINS = {
    WindowType.RECTANGULAR: 1,
    WindowType.HANNING:     2,
    WindowType.HAMMING:     2,
    WindowType.BLACKMAN:    3,
}

_SNR_LIMIT_DB = 100.0
_SINGULAR_EPS = 1e-12
_COEFF_CACHE_SIZE = 32


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= *n* (and >= 1)."""
    return 1 << max(0, int(n - 1).bit_length())


class NumericalEngine:
    """
    Signal-processing toolbox with small named caches.

    Parameters
    ----------
    config:
        Engine configuration.  Defaults to :class:`EngineConfig()`.
    **overrides:
        Individual fields applied on top of *config*.
    """

    def __init__(self, config: Optional[EngineConfig] = None, **overrides) -> None:
        self._config = self._merge_config(config or EngineConfig(), overrides)
        self._kalman_states: "OrderedDict[str, KalmanFilterState]" = OrderedDict()
        self._sg_coeffs: "OrderedDict[Tuple[int, int], np.ndarray]" = OrderedDict()
        self._sos_cache: "OrderedDict[Tuple[float, float, float, int], np.ndarray]" = OrderedDict()
        self._bitrev_cache: Dict[int, np.ndarray] = {}
        self._calls: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    def get_config(self) -> EngineConfig:
        return self._config

    def update_config(self, **changes) -> EngineConfig:
        """
        Apply configuration changes, effective on the next call.

        Every cache is invalidated because Kalman noise terms, window type
        and filter parameters all influence cached state.
        """
        self._config = self._merge_config(self._config, changes)
        self._clear_caches()
        logger.debug("Engine configuration updated: %s", changes)
        return self._config

    def reset(self) -> None:
        """Drop every cached filter state and coefficient table."""
        self._clear_caches()
        self._calls.clear()

    @property
    def statistics(self) -> Dict[str, int]:
        stats = {
            "kalman_streams": len(self._kalman_states),
            "sg_coefficient_sets": len(self._sg_coeffs),
            "bandpass_designs": len(self._sos_cache),
        }
        stats.update({f"calls_{name}": count for name, count in self._calls.items()})
        return stats

    def kalman_state(self, stream_key: str) -> Optional[KalmanFilterState]:
        """Return the stored state for *stream_key*, or ``None``."""
        return self._kalman_states.get(stream_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def spectral_analysis(
        self,
        signal,
        sampling_rate: Optional[float] = None,
        band: Optional[Tuple[float, float]] = None,
    ) -> FrequencySpectrum:
        """
        One-sided spectrum of *signal* with dominant-frequency analysis.

        Parameters
        ----------
        signal:
            1-D sequence, at least 4 samples.
        sampling_rate:
            Sample rate in Hz.  Defaults to the configured rate.
        band:
            ``(low_hz, high_hz)`` searched for the dominant frequency.
            Defaults to the configured physiological range.

        Returns
        -------
        FrequencySpectrum
            ``dominant_frequency`` is 0.0 (with zero purity and SNR) when the
            band holds no bins or the signal carries no AC power.
        """
        x = self._as_signal(signal, 4, "spectral_analysis")
        self._count("spectral_analysis")
        fs = float(sampling_rate or self._config.sampling_rate)
        if fs <= 0:
            raise InvalidParameter("sampling_rate must be positive", parameter="sampling_rate")
        low_hz, high_hz = band or self._config.physiological_range

        n = len(x)
        window_type = WindowType(self._config.window_type)
        taper = self._window(window_type, n)
        tapered = (x - np.mean(x)) * taper

        n_fft = next_power_of_two(n)
        padded = np.zeros(n_fft, dtype=np.complex128)
        padded[:n] = tapered
        spectrum = self.fft(padded)

        half = n_fft // 2 + 1
        freqs = np.arange(half) * fs / n_fft
        magnitudes = np.abs(spectrum[:half])
        phases = np.angle(spectrum[:half])
        power = magnitudes ** 2

        # One-sided periodogram scaled by the window energy
        psd = power / (fs * float(np.sum(taper ** 2)))
        psd[1:half - 1] *= 2.0

        band_idx = np.flatnonzero((freqs >= low_hz) & (freqs <= high_hz))
        total_power = float(power[1:].sum())
        if band_idx.size == 0 or total_power <= 0.0:
            return FrequencySpectrum(freqs, magnitudes, phases, 0.0, (), 0.0, 0.0, psd)

        peak_idx = int(band_idx[np.argmax(power[band_idx])])
        freq_step = fs / n_fft
        dominant = float(freqs[peak_idx])

        # A band-edge bin on the skirt of a peak just outside the band is
        # refined from that neighbouring peak and clipped back into the band
        if not self._is_local_max(power, peak_idx):
            for neighbour in (peak_idx - 1, peak_idx + 1):
                if self._is_local_max(power, neighbour) and power[neighbour] > power[peak_idx]:
                    peak_idx = neighbour
                    break

        # Parabolic interpolation for sub-bin frequency resolution
        if self._is_local_max(power, peak_idx):
            alpha = power[peak_idx - 1]
            beta = power[peak_idx]
            gamma = power[peak_idx + 1]
            p = 0.5 * (alpha - gamma) / (alpha - 2 * beta + gamma)
            refined = float(freqs[peak_idx] + np.clip(p, -0.5, 0.5) * freq_step)
            dominant = float(np.clip(refined, low_hz, high_hz))

        lobe = int(math.ceil(_MAIN_LOBE_BINS[window_type] * n_fft / n))
        main_lo, main_hi = max(1, peak_idx - lobe), min(half, peak_idx + lobe + 1)
        main_power = float(power[main_lo:main_hi].sum())
        purity = float(np.clip(main_power / total_power, 0.0, 1.0))

        harmonics, harmonic_bins = self._find_harmonics(freqs, power, dominant, lobe)

        noise_mask = np.ones(half, dtype=bool)
        noise_mask[0] = False
        noise_mask[main_lo:main_hi] = False
        for b in harmonic_bins:
            noise_mask[max(0, b - lobe):b + lobe + 1] = False
        noise = float(power[noise_mask].mean()) if noise_mask.any() else 0.0
        peak_power = float(power[peak_idx])
        if noise <= 0.0:
            snr = _SNR_LIMIT_DB
        else:
            snr = float(np.clip(10.0 * np.log10(peak_power / noise), -_SNR_LIMIT_DB, _SNR_LIMIT_DB))

        return FrequencySpectrum(
            frequencies=freqs,
            magnitudes=magnitudes,
            phases=phases,
            dominant_frequency=dominant,
            harmonics=tuple(harmonics),
            spectral_purity=purity,
            snr=snr,
            power_spectral_density=psd,
        )

    def fft(self, values) -> np.ndarray:
        """
        Iterative radix-2 FFT.

        Parameters
        ----------
        values:
            1-D sequence whose length is a power of two.
        """
        a = np.asarray(values, dtype=np.complex128)
        n = a.size
        if n == 0 or n & (n - 1):
            raise InvalidParameter(f"FFT length must be a power of two, got {n}",
                                   parameter="length")
        a = a[self._bit_reversal(n)]
        size = 2
        while size <= n:
            half = size // 2
            twiddle = np.exp(-2j * np.pi * np.arange(half) / size)
            blocks = a.reshape(-1, size)
            even = blocks[:, :half].copy()
            odd = blocks[:, half:] * twiddle
            blocks[:, :half] = even + odd
            blocks[:, half:] = even - odd
            size *= 2
        return a

    def kalman_filter(self, signal, stream_key: str = "default") -> np.ndarray:
        """
        Constant-velocity Kalman filter over *signal*.

        The state for *stream_key* is created from the first sample on
        first use and carried over to the next call with the same key.

        Raises
        ------
        SingularMatrix
            When the innovation covariance collapses; the stream's state is
            discarded before raising.
        """
        x = self._as_signal(signal, 1, "kalman_filter")
        self._count("kalman_filter")
        q = self._config.kalman_process_noise
        r = self._config.kalman_measurement_noise

        state = self._kalman_states.get(stream_key)
        if state is None:
            state = KalmanFilterState(
                estimate=np.array([x[0], 0.0]),
                covariance=np.eye(2),
            )
            self._kalman_states[stream_key] = state
            self._evict_kalman_states()
        else:
            self._kalman_states.move_to_end(stream_key)

        F = np.array([[1.0, 1.0], [0.0, 1.0]])
        Q = q * np.eye(2)
        identity = np.eye(2)

        estimate = state.estimate.copy()
        cov = state.covariance.copy()
        out = np.empty_like(x)
        for i, z in enumerate(x):
            # Predict
            estimate = F @ estimate
            cov = F @ cov @ F.T + Q
            # Update (H = [1, 0])
            s = cov[0, 0] + r
            if abs(s) < _SINGULAR_EPS:
                del self._kalman_states[stream_key]
                logger.warning("Kalman stream %r discarded: singular innovation at sample %d",
                               stream_key, i)
                raise SingularMatrix(stream_key, i)
            gain = cov[:, 0] / s
            estimate = estimate + gain * (z - estimate[0])
            cov = (identity - np.outer(gain, [1.0, 0.0])) @ cov
            out[i] = estimate[0]

        state.estimate = estimate
        state.covariance = cov
        state.n_updates += len(x)
        return out

    def savitzky_golay(self, signal, window_size: int, poly_order: int) -> np.ndarray:
        """
        Savitzky–Golay smoothing with odd edge reflection.

        Parameters
        ----------
        signal:
            1-D sequence.
        window_size:
            Odd window length, ``poly_order < window_size <= len(signal)``.
        poly_order:
            Order of the fitted polynomial.
        """
        x = self._as_signal(signal, 1, "savitzky_golay")
        window_size = int(window_size)
        poly_order = int(poly_order)
        if window_size < 1 or window_size % 2 == 0:
            raise InvalidParameter(f"window_size must be a positive odd integer, got {window_size}",
                                   parameter="window_size")
        if poly_order < 0 or poly_order >= window_size:
            raise InvalidParameter(
                f"poly_order must satisfy 0 <= poly_order < window_size, got "
                f"{poly_order} for window {window_size}",
                parameter="poly_order",
            )
        if window_size > len(x):
            raise InvalidParameter(
                f"window_size {window_size} exceeds signal length {len(x)}",
                parameter="window_size",
            )
        self._count("savitzky_golay")

        coeffs = self._savgol_coefficients(window_size, poly_order)
        half = window_size // 2
        padded = np.pad(x, half, mode="reflect", reflect_type="odd")
        return np.convolve(padded, coeffs, mode="valid")

    def detect_peaks_advanced(self, signal, sampling_rate: Optional[float] = None) -> List[Peak]:
        """
        Physiologically constrained peak detection.

        Returns
        -------
        list[Peak]
            Sorted by ascending index; no two peaks closer than the
            configured minimum distance.  Empty when nothing qualifies.
        """
        x = self._as_signal(signal, 3, "detect_peaks_advanced")
        self._count("detect_peaks_advanced")
        fs = float(sampling_rate or self._config.sampling_rate)
        low_hz, high_hz = self._config.physiological_range

        window = 5 if len(x) >= 5 else 3
        smoothed = self.savitzky_golay(x, window, 2)

        candidates, _ = find_peaks(smoothed)
        if candidates.size == 0:
            return []

        prominences, left_bases, right_bases = peak_prominences(smoothed, candidates)
        widths = peak_widths(
            smoothed, candidates, rel_height=0.5,
            prominence_data=(prominences, left_bases, right_bases),
        )[0]

        span = float(np.ptp(smoothed))
        keep = (prominences > 0) & (prominences >= self._config.peak_threshold * span)
        if self._config.peak_min_height is not None:
            keep &= smoothed[candidates] >= self._config.peak_min_height
        if low_hz > 0:
            keep &= widths <= fs / low_hz

        if self._config.peak_min_distance is not None:
            min_distance = int(self._config.peak_min_distance)
        else:
            min_distance = max(1, int(fs / high_hz))

        kept = np.flatnonzero(keep)
        order = kept[np.argsort(-prominences[kept], kind="stable")]
        selected: List[int] = []
        for k in order:
            idx = int(candidates[k])
            if all(abs(idx - int(candidates[s])) >= min_distance for s in selected):
                selected.append(int(k))

        peaks = [
            Peak(
                index=int(candidates[k]),
                value=float(x[candidates[k]]),
                prominence=float(prominences[k]),
                width=float(widths[k]),
                left_base=int(left_bases[k]),
                right_base=int(right_bases[k]),
            )
            for k in selected
        ]
        peaks.sort(key=lambda p: p.index)
        return peaks

    def principal_components(self, data) -> PCAResult:
        """
        PCA of *data* (rows = observations, columns = variables).

        Eigenvectors are returned as columns, ordered by decreasing
        eigenvalue, with the sign chosen so each vector's largest-magnitude
        entry is positive.
        """
        arr = np.asarray(data, dtype=np.float64)
        if arr.ndim == 1:
            arr = arr[:, np.newaxis]
        if arr.ndim != 2 or arr.shape[0] < 2 or arr.shape[1] < 1:
            raise InvalidInput(
                f"principal_components needs a 2-D array with >= 2 rows, got shape {arr.shape}",
                details={"shape": list(arr.shape)},
            )
        if not np.all(np.isfinite(arr)):
            raise InvalidInput("principal_components: data contains non-finite values")
        self._count("principal_components")

        mean = arr.mean(axis=0)
        centred = arr - mean
        cov = np.atleast_2d(np.cov(centred, rowvar=False))
        eigenvalues, eigenvectors = np.linalg.eigh(cov)
        order = np.argsort(eigenvalues)[::-1]
        eigenvalues = np.clip(eigenvalues[order], 0.0, None)
        eigenvectors = eigenvectors[:, order]

        pivots = np.argmax(np.abs(eigenvectors), axis=0)
        signs = np.sign(eigenvectors[pivots, np.arange(eigenvectors.shape[1])])
        signs[signs == 0] = 1.0
        eigenvectors = eigenvectors * signs

        total = float(eigenvalues.sum())
        explained = eigenvalues / total if total > 0 else np.zeros_like(eigenvalues)
        return PCAResult(
            eigenvalues=eigenvalues,
            eigenvectors=eigenvectors,
            explained_variance=explained,
            cumulative_variance=np.cumsum(explained),
            transformed=centred @ eigenvectors,
            mean=mean,
        )

    def bandpass_filter(
        self,
        signal,
        low_hz: float,
        high_hz: float,
        sampling_rate: Optional[float] = None,
        order: int = 4,
    ) -> np.ndarray:
        """
        Butterworth band-pass, zero-phase when the signal is long enough.

        Short signals fall back to a causal single pass so a real-time
        caller always gets an answer.
        """
        x = self._as_signal(signal, 1, "bandpass_filter")
        self._count("bandpass_filter")
        fs = float(sampling_rate or self._config.sampling_rate)
        sos = self._butter_sos(low_hz, high_hz, fs, int(order))
        centred = x - np.mean(x)
        padlen = 3 * (2 * len(sos) + 1)
        if len(centred) > padlen:
            return sosfiltfilt(sos, centred)
        return sosfilt(sos, centred)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_config(base: EngineConfig, changes: dict) -> EngineConfig:
        try:
            config = dataclasses.replace(base, **changes) if changes else base
        except TypeError as e:
            raise InvalidParameter(str(e), parameter="config") from e
        config.validate()
        return config

    def _clear_caches(self) -> None:
        self._kalman_states.clear()
        self._sg_coeffs.clear()
        self._sos_cache.clear()

    def _count(self, name: str) -> None:
        self._calls[name] = self._calls.get(name, 0) + 1

    @staticmethod
    def _as_signal(signal, min_length: int, operation: str) -> np.ndarray:
        x = np.asarray(signal, dtype=np.float64)
        if x.ndim != 1:
            raise InvalidInput(f"{operation}: expected a 1-D signal, got shape {x.shape}",
                               details={"operation": operation})
        if len(x) < min_length:
            raise SignalTooShort(len(x), min_length, operation)
        if not np.all(np.isfinite(x)):
            raise InvalidInput(f"{operation}: signal contains non-finite values",
                               details={"operation": operation})
        return x

    @staticmethod
    def _window(window_type: WindowType, n: int) -> np.ndarray:
        if window_type is WindowType.HANNING:
            return np.hanning(n)
        if window_type is WindowType.HAMMING:
            return np.hamming(n)
        if window_type is WindowType.BLACKMAN:
            return np.blackman(n)
        return np.ones(n)

    @staticmethod
    def _is_local_max(power: np.ndarray, i: int) -> bool:
        """True when bin *i* is an interior, strictly curved spectral maximum."""
        if not 0 < i < len(power) - 1:
            return False
        alpha, beta, gamma = power[i - 1], power[i], power[i + 1]
        return bool(beta >= alpha and beta >= gamma and alpha - 2 * beta + gamma < 0)

    def _bit_reversal(self, n: int) -> np.ndarray:
        perm = self._bitrev_cache.get(n)
        if perm is None:
            bits = n.bit_length() - 1
            idx = np.arange(n)
            perm = np.zeros(n, dtype=np.int64)
            for b in range(bits):
                perm |= ((idx >> b) & 1) << (bits - 1 - b)
            self._bitrev_cache[n] = perm
        return perm

    def _find_harmonics(
        self,
        freqs: np.ndarray,
        power: np.ndarray,
        fundamental: float,
        lobe: int,
    ) -> Tuple[List[float], List[int]]:
        """Locate significant peaks near integer multiples of *fundamental*."""
        harmonics: List[float] = []
        bins: List[int] = []
        if fundamental <= 0:
            return harmonics, bins
        floor = float(power[1:].mean())
        tol = self._config.harmonic_tolerance
        for h in range(2, self._config.max_harmonics + 1):
            target = h * fundamental
            if target > freqs[-1]:
                break
            near = np.flatnonzero(np.abs(freqs - target) <= tol)
            if near.size == 0:
                continue
            b = int(near[np.argmax(power[near])])
            if power[b] > floor:
                harmonics.append(float(freqs[b]))
                bins.append(b)
        return harmonics, bins

    def _evict_kalman_states(self) -> None:
        while len(self._kalman_states) > self._config.max_kalman_states:
            key, _ = self._kalman_states.popitem(last=False)
            logger.debug("Evicted Kalman stream %r", key)

    def _savgol_coefficients(self, window_size: int, poly_order: int) -> np.ndarray:
        key = (window_size, poly_order)
        coeffs = self._sg_coeffs.get(key)
        if coeffs is None:
            coeffs = savgol_coeffs(window_size, poly_order)
            self._sg_coeffs[key] = coeffs
            if len(self._sg_coeffs) > _COEFF_CACHE_SIZE:
                self._sg_coeffs.popitem(last=False)
        else:
            self._sg_coeffs.move_to_end(key)
        return coeffs

    def _butter_sos(self, low_hz: float, high_hz: float, fs: float, order: int) -> np.ndarray:
        """Construct (or fetch) a Butterworth bandpass filter (SOS form)."""
        if not 0 < low_hz < high_hz:
            raise InvalidParameter(f"Invalid band ({low_hz}, {high_hz})", parameter="band")
        if order < 1:
            raise InvalidParameter("order must be >= 1", parameter="order")
        key = (float(low_hz), float(high_hz), fs, order)
        sos = self._sos_cache.get(key)
        if sos is None:
            nyq = fs / 2.0
            low = max(1e-4, min(low_hz / nyq, 0.999))
            high = max(low + 1e-4, min(high_hz / nyq, 0.999))
            sos = butter(order, [low, high], btype="bandpass", output="sos")
            self._sos_cache[key] = sos
            if len(self._sos_cache) > _COEFF_CACHE_SIZE:
                self._sos_cache.popitem(last=False)
        return sos
