"""
Pytest configuration and shared fixtures for BeatChain tests.
"""

import numpy as np
import pytest


def gaussian_pulse_train(n_samples: int, positions: np.ndarray, sampling_rate: float,
                         amplitude: float = 1.0, width_sec: float = 0.012) -> np.ndarray:
    """Zero baseline with one narrow Gaussian R wave per position."""
    t = np.arange(n_samples)
    sigma = width_sec * sampling_rate
    signal = np.zeros(n_samples)
    for position in positions:
        signal += amplitude * np.exp(-((t - position) ** 2) / (2 * sigma ** 2))
    return signal


@pytest.fixture
def sampling_rate() -> float:
    """Sampling rate for detector tests (250 Hz, a tabulated bandpass rate)."""
    return 250.0


@pytest.fixture
def r_peak_positions(sampling_rate: float) -> np.ndarray:
    """R-peaks every 0.8 s (75 bpm) in a 20 s record, first one at 0.5 s."""
    n_samples = int(20 * sampling_rate)
    rr = int(0.8 * sampling_rate)
    start = int(0.5 * sampling_rate)
    return np.arange(start, n_samples - start, rr)


@pytest.fixture
def pulse_train(sampling_rate: float, r_peak_positions: np.ndarray) -> np.ndarray:
    """
    Synthetic ECG with clear R-peaks at ``r_peak_positions``.

    The R waves are narrow Gaussians peaking exactly on integer samples, so
    refined R-peaks can be compared sample by sample.
    """
    return gaussian_pulse_train(int(20 * sampling_rate), r_peak_positions, sampling_rate)


@pytest.fixture
def rr_values_ms() -> np.ndarray:
    """Regular RR series in milliseconds (fs = 1000 Hz, so samples == ms)."""
    return np.full(20, 800.0)


@pytest.fixture
def spike_signal() -> np.ndarray:
    """Flat signal with a positive spike at 520 and a negative one at 480."""
    signal = np.zeros(1000)
    signal[520] = 1.0
    signal[480] = -1.5
    return signal
