"""
PPG Vitals — fingertip-on-lens photoplethysmography toolkit.
Place a finger over the camera; the extractor turns per-frame channel
intensities into a calibrated PPG signal and the estimator derives heart
rate, SpO2, blood pressure, HRV and arrhythmia indicators from it.
"""

__version__ = "0.1.0"
__author__ = "ppg_vitals"
