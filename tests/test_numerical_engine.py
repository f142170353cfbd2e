"""
Unit tests for NumericalEngine.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.config import WindowType
from ppg_vitals.exceptions import (
    InvalidInput,
    InvalidParameter,
    SignalTooShort,
    SingularMatrix,
)
from ppg_vitals.numerical_engine import NumericalEngine, next_power_of_two


def _sine(freq_hz: float, fs: float, seconds: float, amplitude: float = 1.0) -> np.ndarray:
    t = np.arange(int(fs * seconds)) / fs
    return amplitude * np.sin(2 * np.pi * freq_hz * t)


# ---------------------------------------------------------------------------
# FFT / spectral analysis
# ---------------------------------------------------------------------------

class TestSpectralAnalysis:

    def test_next_power_of_two(self):
        assert next_power_of_two(1) == 1
        assert next_power_of_two(4) == 4
        assert next_power_of_two(5) == 8
        assert next_power_of_two(240) == 256

    def test_fft_matches_numpy(self):
        rng = np.random.default_rng(42)
        x = rng.normal(size=64) + 1j * rng.normal(size=64)
        engine = NumericalEngine()
        assert np.allclose(engine.fft(x), np.fft.fft(x))

    def test_fft_rejects_non_power_of_two(self):
        with pytest.raises(InvalidParameter):
            NumericalEngine().fft(np.ones(6))

    @pytest.mark.parametrize("window", list(WindowType))
    def test_sine_dominant_frequency(self, window):
        """A 1.5 Hz sine sampled for 8 s must be located within ±0.15 Hz."""
        engine = NumericalEngine(window_type=window)
        spectrum = engine.spectral_analysis(_sine(1.5, 30.0, 8.0), sampling_rate=30.0)
        assert abs(spectrum.dominant_frequency - 1.5) < 0.15, \
            f"{window.value}: got {spectrum.dominant_frequency:.3f} Hz"

    @pytest.mark.parametrize("window", list(WindowType))
    @pytest.mark.parametrize("freq", [0.5, 0.52, 0.55])
    def test_sine_at_band_edge(self, window, freq):
        """A short sine sitting on the lower band edge must not be pushed into the band."""
        engine = NumericalEngine(window_type=window)
        spectrum = engine.spectral_analysis(_sine(freq, 30.0, 4.0), sampling_rate=30.0)
        assert abs(spectrum.dominant_frequency - freq) < 0.15, \
            f"{window.value} @ {freq} Hz: got {spectrum.dominant_frequency:.3f} Hz"
        assert spectrum.dominant_frequency >= 0.5

    def test_sine_spectral_purity_and_snr(self):
        engine = NumericalEngine()
        spectrum = engine.spectral_analysis(_sine(1.5, 30.0, 8.0), sampling_rate=30.0)
        assert spectrum.spectral_purity > 0.8, f"Purity too low: {spectrum.spectral_purity:.2f}"
        assert spectrum.snr > 10.0
        assert 0.0 <= spectrum.spectral_purity <= 1.0

    def test_spectrum_shapes(self):
        spectrum = NumericalEngine().spectral_analysis(_sine(1.2, 30.0, 10.0), sampling_rate=30.0)
        n = len(spectrum.frequencies)
        assert n == 512 // 2 + 1
        assert len(spectrum.magnitudes) == n
        assert len(spectrum.phases) == n
        assert len(spectrum.power_spectral_density) == n
        assert spectrum.frequencies[-1] == pytest.approx(15.0)

    def test_harmonic_detected(self):
        fs = 30.0
        signal = _sine(1.2, fs, 10.0) + _sine(2.4, fs, 10.0, amplitude=0.5)
        spectrum = NumericalEngine().spectral_analysis(signal, sampling_rate=fs)
        assert abs(spectrum.dominant_frequency - 1.2) < 0.15
        assert any(abs(h - 2.4) < 0.1 for h in spectrum.harmonics), spectrum.harmonics

    def test_band_restricts_search(self):
        fs = 30.0
        signal = _sine(1.2, fs, 20.0) + _sine(0.25, fs, 20.0, amplitude=0.3)
        spectrum = NumericalEngine().spectral_analysis(signal, sampling_rate=fs, band=(0.1, 0.5))
        assert abs(spectrum.dominant_frequency - 0.25) < 0.1

    def test_constant_signal_has_no_dominant(self):
        spectrum = NumericalEngine().spectral_analysis(np.full(64, 3.0))
        assert spectrum.dominant_frequency == 0.0
        assert spectrum.spectral_purity == 0.0

    def test_too_short_raises(self):
        with pytest.raises(SignalTooShort):
            NumericalEngine().spectral_analysis([1.0, 2.0, 3.0])

    def test_non_finite_raises(self):
        with pytest.raises(InvalidInput):
            NumericalEngine().spectral_analysis([1.0, np.nan, 3.0, 4.0])

    def test_result_arrays_read_only(self):
        spectrum = NumericalEngine().spectral_analysis(_sine(1.2, 30.0, 4.0))
        with pytest.raises(ValueError):
            spectrum.magnitudes[0] = 1.0

    def test_deterministic(self):
        signal = _sine(1.3, 30.0, 6.0) + 0.1 * _sine(7.0, 30.0, 6.0)
        a = NumericalEngine().spectral_analysis(signal)
        b = NumericalEngine().spectral_analysis(signal)
        assert np.array_equal(a.magnitudes, b.magnitudes)
        assert a.dominant_frequency == b.dominant_frequency
        assert a.snr == b.snr


# ---------------------------------------------------------------------------
# Kalman filter
# ---------------------------------------------------------------------------

class TestKalmanFilter:

    def test_reduces_oscillatory_noise(self):
        n = np.arange(200)
        noisy = 5.0 + 0.5 * np.sin(2 * np.pi * 0.45 * n)
        filtered = NumericalEngine().kalman_filter(noisy, "heart_rate")
        assert len(filtered) == len(noisy)
        assert np.var(filtered) < np.var(noisy)

    def test_state_persists_per_key(self):
        engine = NumericalEngine()
        engine.kalman_filter([10.0, 10.0, 10.0], "a")
        state = engine.kalman_state("a")
        assert state is not None
        assert state.n_updates == 3
        out = engine.kalman_filter([10.0], "a")
        assert engine.kalman_state("a").n_updates == 4
        assert out[0] == pytest.approx(10.0, abs=1e-6)
        assert engine.kalman_state("b") is None

    def test_singular_covariance_raises_and_drops_stream(self):
        engine = NumericalEngine(kalman_process_noise=0.0, kalman_measurement_noise=0.0)
        with pytest.raises(SingularMatrix) as exc:
            engine.kalman_filter([1.0, 2.0, 3.0, 4.0], "broken")
        assert exc.value.sample_index == 2
        assert exc.value.to_dict()["error"] == "SINGULAR_MATRIX"
        assert engine.kalman_state("broken") is None

    def test_lru_eviction(self):
        engine = NumericalEngine(max_kalman_states=2)
        engine.kalman_filter([1.0], "a")
        engine.kalman_filter([1.0], "b")
        engine.kalman_filter([1.0], "a")      # refresh a
        engine.kalman_filter([1.0], "c")      # evicts b
        assert engine.kalman_state("a") is not None
        assert engine.kalman_state("b") is None
        assert engine.kalman_state("c") is not None

    def test_reset_clears_states(self):
        engine = NumericalEngine()
        engine.kalman_filter([1.0, 2.0], "x")
        engine.reset()
        assert engine.kalman_state("x") is None
        assert engine.statistics["kalman_streams"] == 0


# ---------------------------------------------------------------------------
# Savitzky–Golay
# ---------------------------------------------------------------------------

class TestSavitzkyGolay:

    def test_reproduces_linear_ramp(self):
        ramp = 3.0 + 0.5 * np.arange(50)
        smoothed = NumericalEngine().savitzky_golay(ramp, 7, 2)
        assert np.allclose(smoothed, ramp, atol=1e-9)

    def test_variance_does_not_increase(self):
        rng = np.random.default_rng(42)
        noisy = rng.normal(size=300)
        smoothed = NumericalEngine().savitzky_golay(noisy, 11, 3)
        assert len(smoothed) == len(noisy)
        assert np.var(smoothed) <= np.var(noisy)

    @pytest.mark.parametrize("window, order", [(6, 2), (5, 5), (5, 7), (0, 0)])
    def test_invalid_parameters(self, window, order):
        with pytest.raises(InvalidParameter):
            NumericalEngine().savitzky_golay(np.arange(20.0), window, order)

    def test_window_longer_than_signal(self):
        with pytest.raises(InvalidParameter):
            NumericalEngine().savitzky_golay(np.arange(5.0), 7, 2)

    def test_coefficients_cached(self):
        engine = NumericalEngine()
        engine.savitzky_golay(np.arange(20.0), 5, 2)
        engine.savitzky_golay(np.arange(30.0), 5, 2)
        assert engine.statistics["sg_coefficient_sets"] == 1
        engine.update_config(peak_threshold=0.2)
        assert engine.statistics["sg_coefficient_sets"] == 0


# ---------------------------------------------------------------------------
# Peak detection
# ---------------------------------------------------------------------------

class TestPeakDetection:

    def test_sine_peaks_sorted_and_spaced(self):
        engine = NumericalEngine()
        peaks = engine.detect_peaks_advanced(_sine(1.2, 30.0, 10.0), sampling_rate=30.0)
        indices = [p.index for p in peaks]
        assert 10 <= len(peaks) <= 13, f"Unexpected peak count {len(peaks)}"
        assert indices == sorted(indices)
        assert all(b - a >= 7 for a, b in zip(indices, indices[1:]))

    def test_configured_min_distance(self):
        engine = NumericalEngine(peak_min_distance=40)
        peaks = engine.detect_peaks_advanced(_sine(1.2, 30.0, 10.0))
        indices = [p.index for p in peaks]
        assert len(indices) >= 2
        assert all(b - a >= 40 for a, b in zip(indices, indices[1:]))

    def test_flat_signal_has_no_peaks(self):
        assert NumericalEngine().detect_peaks_advanced(np.zeros(50)) == []

    def test_small_ripples_rejected(self):
        fs = 30.0
        signal = _sine(1.0, fs, 10.0) + _sine(6.0, fs, 10.0, amplitude=0.02)
        peaks = NumericalEngine().detect_peaks_advanced(signal, sampling_rate=fs)
        assert 8 <= len(peaks) <= 11
        assert all(p.prominence > 0.5 for p in peaks)

    def test_deterministic(self):
        signal = _sine(1.1, 30.0, 8.0) + 0.2 * _sine(3.3, 30.0, 8.0)
        a = NumericalEngine().detect_peaks_advanced(signal)
        b = NumericalEngine().detect_peaks_advanced(signal)
        assert a == b


# ---------------------------------------------------------------------------
# PCA / band-pass / configuration
# ---------------------------------------------------------------------------

class TestPrincipalComponents:

    def test_correlated_columns(self):
        rng = np.random.default_rng(42)
        x = rng.normal(size=200)
        data = np.column_stack([x, 2 * x + 0.01 * rng.normal(size=200), 0.1 * rng.normal(size=200)])
        pca = NumericalEngine().principal_components(data)
        assert pca.explained_variance[0] > 0.9
        assert pca.cumulative_variance[-1] == pytest.approx(1.0)
        assert np.all(np.diff(pca.eigenvalues) <= 0)
        assert pca.transformed.shape == (200, 3)
        assert np.allclose(pca.mean, data.mean(axis=0))

    def test_single_row_raises(self):
        with pytest.raises(InvalidInput):
            NumericalEngine().principal_components(np.ones((1, 3)))


class TestBandpassAndConfig:

    def test_bandpass_removes_drift(self):
        fs = 30.0
        t = np.arange(int(fs * 20)) / fs
        signal = np.sin(2 * np.pi * 1.2 * t) + 5.0 * t / t[-1]
        filtered = NumericalEngine().bandpass_filter(signal, 0.5, 4.0, fs)
        assert len(filtered) == len(signal)
        assert abs(np.mean(filtered)) < 0.1
        spectrum = NumericalEngine().spectral_analysis(filtered, sampling_rate=fs)
        assert abs(spectrum.dominant_frequency - 1.2) < 0.15

    def test_bandpass_short_signal(self):
        out = NumericalEngine().bandpass_filter([1.0, 2.0, 1.0, 2.0, 1.0], 0.5, 4.0, 30.0)
        assert len(out) == 5
        assert np.all(np.isfinite(out))

    def test_invalid_config_rejected(self):
        with pytest.raises(InvalidParameter):
            NumericalEngine(physiological_range=(4.0, 0.5))
        engine = NumericalEngine()
        with pytest.raises(InvalidParameter):
            engine.update_config(sampling_rate=0)
        with pytest.raises(InvalidParameter):
            engine.update_config(no_such_field=1)
        assert engine.get_config().sampling_rate == 30.0

    def test_update_config_clears_kalman_states(self):
        engine = NumericalEngine()
        engine.kalman_filter([1.0, 2.0], "hr")
        engine.update_config(kalman_process_noise=0.05)
        assert engine.kalman_state("hr") is None
        assert engine.get_config().kalman_process_noise == 0.05
