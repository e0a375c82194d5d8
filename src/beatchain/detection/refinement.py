"""
BeatChain: R-Peak Refinement

Post-processors that move a provisional R-peak onto the raw-signal feature it
belongs to:
- MaxSearchRefinement: literal maximum around the provisional peak
- SlacknessReduction: largest deviation from a local three-point baseline

Both run after the detector has collected enough samples on either side of
the peak, mutate the QRS complex in place, and return the displacement
``old - new`` in samples.

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

import numpy as np

from beatchain.core.beats import QrsComplex
from beatchain.core.signal import EcgLead, EcgSignal


logger = logging.getLogger(__name__)


class RPeakRefinement(ABC):
    """
    Base class of R-peak post-processors.

    Parameters
    ----------
    sampling_rate : float
        Sampling frequency in Hz.
    """

    def __init__(self, sampling_rate: float):
        self.sampling_rate = float(sampling_rate)

    @property
    @abstractmethod
    def margin(self) -> int:
        """Samples of context needed on each side of the provisional peak."""

    @abstractmethod
    def process(self, qrs: QrsComplex) -> int:
        """Relocate the R-peak of ``qrs`` and return ``old - new``."""

    def __call__(self, qrs: QrsComplex) -> int:
        return self.process(qrs)

    @staticmethod
    def _available(signal: EcgSignal, start: int, stop: int) -> bool:
        return signal.is_available(start) and signal.is_available(stop)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(fs={self.sampling_rate:g}, margin={self.margin})"


class MaxSearchRefinement(RPeakRefinement):
    """
    Moves the R-peak to the largest sample within a symmetric window.

    Only meaningful on a lead whose R wave is reliably the dominant positive
    deflection (lead II).

    Parameters
    ----------
    sampling_rate : float
        Sampling frequency in Hz.
    window_sec : float, default=0.4
        Total search window; the peak is searched within +/- half of it.
    """

    def __init__(self, sampling_rate: float, window_sec: float = 0.4):
        super().__init__(sampling_rate)
        self.window_sec = window_sec
        self._half_window = int(round(self.sampling_rate * window_sec / 2))

    @property
    def margin(self) -> int:
        return self._half_window

    def process(self, qrs: QrsComplex) -> int:
        old = qrs.r_position
        start = old - self._half_window
        stop = old + self._half_window
        if not self._available(qrs.signal, start, stop):
            logger.debug(f"Max search window [{start}, {stop}] unavailable, R stays at {old}")
            return 0

        window = qrs.signal.subrange(start, stop + 1)
        new = start + int(np.argmax(window))
        qrs.set_r_peak(new)
        return old - new


class SlacknessReduction(RPeakRefinement):
    """
    Moves the R-peak to the sample deviating most from a local baseline.

    The baseline is the median of the samples at the provisional peak and
    half a baseline window to either side. Because deviations are taken in
    absolute value, negative-going QRS complexes and complexes riding on
    baseline wander are handled as well.

    Parameters
    ----------
    sampling_rate : float
        Sampling frequency in Hz.
    baseline_sec : float, default=0.2
        Distance between the two outer baseline points.
    search_sec : float, default=0.25
        Total search window around the provisional peak.
    """

    def __init__(self, sampling_rate: float, baseline_sec: float = 0.2,
                 search_sec: float = 0.25):
        super().__init__(sampling_rate)
        self._baseline_offset = int(round(self.sampling_rate * baseline_sec)) // 2
        self._half_window = int(round(self.sampling_rate * search_sec)) // 2

    @property
    def margin(self) -> int:
        return max(self._baseline_offset, self._half_window)

    def process(self, qrs: QrsComplex) -> int:
        signal = qrs.signal
        old = qrs.r_position
        if not self._available(signal, old - self.margin, old + self.margin):
            logger.debug(f"Slackness window around {old} unavailable, R unchanged")
            return 0

        baseline = float(np.median([
            signal.get(old - self._baseline_offset),
            signal.get(old),
            signal.get(old + self._baseline_offset),
        ]))

        start = old - self._half_window
        window = signal.subrange(start, old + self._half_window + 1)
        new = start + int(np.argmax(np.abs(window - baseline)))
        qrs.set_r_peak(new)
        return old - new


def default_refinement(sampling_rate: float, has_reference_lead: bool) -> List[RPeakRefinement]:
    """Max search on lead II recordings, slackness reduction otherwise."""
    if has_reference_lead:
        return [MaxSearchRefinement(sampling_rate)]
    return [SlacknessReduction(sampling_rate)]


def refine_r_peaks(
    signal: np.ndarray,
    r_peaks: Sequence[int],
    fs: float,
    method: str = 'max'
) -> np.ndarray:
    """
    Convenience function to refine provisional R-peaks of a stored signal.

    Parameters
    ----------
    signal : np.ndarray
        Raw single-lead ECG.
    r_peaks : sequence of int
        Provisional R-peak sample indices.
    fs : float
        Sampling frequency in Hz.
    method : str
        'max' for MaxSearchRefinement, 'slackness' for SlacknessReduction.

    Returns
    -------
    np.ndarray
        Refined R-peak indices (unchanged where the window was unavailable).
    """
    if method == 'max':
        refiner: RPeakRefinement = MaxSearchRefinement(fs)
    elif method == 'slackness':
        refiner = SlacknessReduction(fs)
    else:
        raise ValueError(f"Unknown refinement method: {method}")

    source = EcgSignal.from_array(signal, fs, EcgLead.II)
    refined = []
    for r in r_peaks:
        qrs = QrsComplex(source, int(r))
        refiner.process(qrs)
        refined.append(qrs.r_position)
    return np.asarray(refined, dtype=int)
