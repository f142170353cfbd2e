"""
Infra-red channel model.

Phone and Pi cameras have an IR-cut filter, so there is no real IR
sample.  The ratio-of-ratios SpO2 formula still wants one, so the
extractor asks an :class:`InfraredModel` to synthesise it from the
visible absorbances.  A build with a genuine IR sensor replaces the
model; nothing downstream changes.
"""

from __future__ import annotations

from typing import Protocol, Tuple

import numpy as np


class InfraredModel(Protocol):
    def estimate(self, red: np.ndarray, green: np.ndarray, blue: np.ndarray) -> np.ndarray:
        """Return an infra-red absorbance series aligned with the inputs."""
        ...


class LinearInfraredModel:
    """
    IR absorbance as a fixed linear mix of visible absorbances.

    Parameters
    ----------
    weights:
        ``(w_red, w_green, w_blue)``.  Default ``(0.7, 0.2, -0.1)``: red
        light penetrates deepest and tracks IR most closely; blue is
        mostly surface reflection and is subtracted.
    """

    def __init__(self, weights: Tuple[float, float, float] = (0.7, 0.2, -0.1)) -> None:
        self.weights = tuple(float(w) for w in weights)

    def estimate(self, red: np.ndarray, green: np.ndarray, blue: np.ndarray) -> np.ndarray:
        w_r, w_g, w_b = self.weights
        return (
            w_r * np.asarray(red, dtype=np.float64)
            + w_g * np.asarray(green, dtype=np.float64)
            + w_b * np.asarray(blue, dtype=np.float64)
        )
