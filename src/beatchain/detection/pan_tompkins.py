"""
BeatChain: Pan-Tompkins QRS Detector

Streaming version of the classical algorithm of J. Pan and W. J. Tompkins,
"A Real-Time QRS Detection Algorithm", IEEE Trans. Biomed. Eng. 32(3), 1985.

Processing steps:
1. Bandpass filter (5-15 Hz)
2. Five-point derivative
3. Squaring
4. Moving-window integration (150 ms)
5. Adaptive thresholds on the integrated signal's peaks, with T-wave
   discrimination and search-back for missed beats

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from beatchain.core.beats import QrsComplex
from beatchain.core.ring_buffer import RingBuffer
from beatchain.core.signal import Ecg, EcgLead, EcgSignal
from beatchain.detection.base import QrsComplexCollector, QrsDetector
from beatchain.detection.refinement import RPeakRefinement, default_refinement
from beatchain.preprocessing.filters import (
    PAN_TOMPKINS_BAND,
    DigitalFilter,
    MovingAverageFilter,
    bandpass_filter,
)


logger = logging.getLogger(__name__)

# Five-point derivative, newest sample first
DERIVATIVE_COEFFICIENTS = np.array([2.0, 1.0, 0.0, -1.0, -2.0]) / 8.0


@dataclass
class PanTompkinsConfig:
    """Configuration for the Pan-Tompkins detector."""

    # Filtering
    bandpass_low: float = PAN_TOMPKINS_BAND[0]   # Hz
    bandpass_high: float = PAN_TOMPKINS_BAND[1]  # Hz
    bandpass_order: int = PAN_TOMPKINS_BAND[2]
    integration_window_sec: float = 0.150

    # Decision rules
    learning_sec: float = 2.0          # Threshold initialisation phase
    refractory_sec: float = 0.200
    t_wave_window_sec: float = 0.360   # T-wave discrimination range
    t_wave_slope_ratio: float = 0.5
    searchback_factor: float = 1.66    # Multiple of the mean RR interval
    max_rr_sec: float = 2.5            # Longest RR interval kept for search-back
    signal_weight: float = 0.125       # Running estimate update weight
    searchback_weight: float = 0.25
    rr_average_length: int = 8

    # Stored raw window around each R-peak
    window_before_sec: float = 0.12
    window_after_sec: float = 0.28

    history_size: int = 30
    preferred_lead: EcgLead = EcgLead.II
    apply_refinement: bool = True

    def __post_init__(self):
        if not 0 < self.bandpass_low < self.bandpass_high:
            raise ValueError("Bandpass edges must satisfy 0 < low < high")
        if self.integration_window_sec <= 0 or self.learning_sec <= 0:
            raise ValueError("integration_window_sec and learning_sec must be positive")
        if self.max_rr_sec <= 0 or self.searchback_factor <= 1:
            raise ValueError("max_rr_sec must be positive and searchback_factor above 1")
        if not 0 < self.signal_weight < 1 or not 0 < self.searchback_weight < 1:
            raise ValueError("Update weights must lie in (0, 1)")

    def to_dict(self) -> Dict:
        result = asdict(self)
        result['preferred_lead'] = self.preferred_lead.value
        return result


class PanTompkinsDetector(QrsDetector):
    """
    Pan-Tompkins QRS detector working one sample at a time.

    Parameters
    ----------
    ecg : Ecg or EcgSignal
        Sample source.
    config : PanTompkinsConfig, optional
        Detector configuration. Uses defaults if not provided.
    post_processors : sequence of RPeakRefinement, optional
        R-peak refinement, chosen by lead as for the knowledge-based detector.
    template : QrsComplex, optional
        Reference complex for beat-to-template correlation.

    Example
    -------
    >>> detector = PanTompkinsDetector(Ecg.from_array(signal, fs=360))
    >>> complexes = detector.find_qrs_complexes()

    Notes
    -----
    - Peaks found during the learning phase are classified once it ends
    - Thresholds are kept for the integrated signal only
    """

    def __init__(
        self,
        ecg: Union[Ecg, EcgSignal],
        config: Optional[PanTompkinsConfig] = None,
        post_processors: Optional[Sequence[RPeakRefinement]] = None,
        template: Optional[QrsComplex] = None
    ):
        self.config = config or PanTompkinsConfig()
        cfg = self.config

        if isinstance(ecg, EcgSignal):
            self.signal = ecg
            has_reference_lead = ecg.lead == EcgLead.II
        else:
            self.signal = ecg.best_matching_signal(cfg.preferred_lead)
            has_reference_lead = ecg.has_lead(EcgLead.II)

        fs = self.signal.sampling_rate
        self.sampling_rate = fs

        self._bandpass = bandpass_filter(fs, cfg.bandpass_low, cfg.bandpass_high, cfg.bandpass_order)
        self._derivative = DigitalFilter(DERIVATIVE_COEFFICIENTS, group_delay=2)
        self._integrator = MovingAverageFilter(max(int(round(cfg.integration_window_sec * fs)), 1))
        self.delay = (self._bandpass.group_delay + self._derivative.group_delay
                      + self._integrator.group_delay)

        self._refractory = int(round(cfg.refractory_sec * fs))
        self._t_wave_window = int(round(cfg.t_wave_window_sec * fs))
        self._learning_samples = int(round(cfg.learning_sec * fs))

        if post_processors is None:
            post_processors = default_refinement(fs, has_reference_lead) if cfg.apply_refinement else []
        self._collector = QrsComplexCollector(
            self.signal,
            samples_before=int(round(cfg.window_before_sec * fs)),
            samples_after=int(round(cfg.window_after_sec * fs)),
            refractory=self._refractory,
            post_processors=post_processors,
            history_size=cfg.history_size,
            template=template,
        )

        # Filtered-domain histories, indexed by the sample counter. They span
        # the search-back horizon plus the integration window of its peaks.
        horizon = max(cfg.learning_sec, cfg.searchback_factor * cfg.max_rr_sec) + 0.5
        self._peak_context = self._integrator.window + self._derivative.group_delay
        capacity = self._peak_context + int(horizon * fs)
        self._filtered = RingBuffer(capacity)
        self._slopes = RingBuffer(capacity)
        self._integrated = RingBuffer(capacity)
        self._check_source_capacity(capacity + self._bandpass.group_delay)

        # Adaptive thresholds
        self.spki = 0.0
        self.npki = 0.0
        self.threshold_i1 = 0.0
        self.threshold_i2 = 0.0
        self._learning = True
        self._learning_max = 0.0
        self._learning_sum = 0.0
        self._learning_peaks: List[Tuple[int, float]] = []
        self._noise_peaks: List[Tuple[int, float]] = []
        self._rr_history: Deque[int] = deque(maxlen=cfg.rr_average_length)
        self._last_qrs: Optional[int] = None
        self._last_slope = 0.0

        self._first_index: Optional[int] = None
        self._last_index: Optional[int] = None

    @property
    def history(self) -> RingBuffer:
        return self._collector.history

    @property
    def template(self) -> Optional[QrsComplex]:
        return self._collector.template

    @template.setter
    def template(self, qrs: Optional[QrsComplex]) -> None:
        self._collector.template = qrs.to_template() if qrs is not None else None

    # ------------------------------------------------------------------
    # Per-sample processing
    # ------------------------------------------------------------------

    def next(self, sample_index: Optional[int] = None) -> Optional[QrsComplex]:
        index = self.signal.last_index if sample_index is None else int(sample_index)
        if self._last_index is not None and index != self._last_index + 1:
            raise ValueError(f"Samples must be processed in order: expected "
                             f"{self._last_index + 1}, got {index}")
        if self._first_index is None:
            self._first_index = index
        self._last_index = index
        return self._step(self.signal.get(index), index)

    def _step(self, value: float, processed_index: int) -> Optional[QrsComplex]:
        filtered = self._bandpass.next(value)
        slope = self._derivative.next(filtered)
        energy = slope * slope
        integrated = self._integrator.next(energy)

        self._filtered.add(filtered)
        self._slopes.add(energy)
        counter = self._integrated.add(integrated)

        if self._learning:
            self._learning_max = max(self._learning_max, integrated)
            self._learning_sum += integrated

        # Local maximum of the integrated signal at the previous sample
        if counter >= 2:
            before, peak = self._integrated.get(counter - 2), self._integrated.get(counter - 1)
            if peak > before and peak >= integrated:
                if self._learning:
                    self._learning_peaks.append((counter - 1, peak))
                else:
                    self._classify_peak(counter - 1, peak)

        if self._learning and counter + 1 >= self._learning_samples:
            self._end_learning(counter + 1)
        elif not self._learning:
            self._search_back(counter)

        return self._collector.poll(processed_index)

    def _end_learning(self, n_samples: int) -> None:
        self.spki = 0.25 * self._learning_max
        self.npki = 0.5 * self._learning_sum / max(n_samples, 1)
        self._update_thresholds()
        self._learning = False
        logger.debug(f"Learning phase done: SPKI={self.spki:.4g}, NPKI={self.npki:.4g}")

        peaks, self._learning_peaks = self._learning_peaks, []
        for position, value in peaks:
            self._classify_peak(position, value)

    def _update_thresholds(self) -> None:
        self.threshold_i1 = self.npki + 0.25 * (self.spki - self.npki)
        self.threshold_i2 = 0.5 * self.threshold_i1

    def _max_slope(self, position: int) -> float:
        start = max(position - self._integrator.window, self._slopes.tail_index)
        return float(np.max(self._slopes.subrange(start, position + 1)))

    def _classify_peak(self, position: int, value: float) -> None:
        since_last = position - self._last_qrs if self._last_qrs is not None else None

        if value > self.threshold_i1 and (since_last is None or since_last > self._refractory):
            slope = self._max_slope(position)
            if (since_last is not None and since_last < self._t_wave_window
                    and slope < self.config.t_wave_slope_ratio * self._last_slope):
                logger.debug(f"Peak at {position} classified as T-wave")
                self._update_noise(value)
                return
            self._accept(position, value, slope, self.config.signal_weight)
            return

        self._update_noise(value)
        self._noise_peaks.append((position, value))

    def _update_noise(self, value: float) -> None:
        weight = self.config.signal_weight
        self.npki = weight * value + (1 - weight) * self.npki
        self._update_thresholds()

    def _search_back(self, counter: int) -> None:
        if self._last_qrs is None or not self._rr_history:
            return
        rr_mean = float(np.mean(self._rr_history))
        if counter - self._last_qrs <= self.config.searchback_factor * rr_mean:
            return

        # peaks whose integration window left the histories cannot be located
        oldest = self._filtered.tail_index + self._peak_context
        stale = [p for p, _ in self._noise_peaks if p < oldest]
        if stale:
            logger.debug(f"Search-back skips {len(stale)} peaks older than sample {oldest}")
            self._noise_peaks = [(p, v) for p, v in self._noise_peaks if p >= oldest]

        candidates = [(p, v) for p, v in self._noise_peaks
                      if v > self.threshold_i2 and p - self._last_qrs > self._refractory]
        if not candidates:
            return
        position, value = max(candidates, key=lambda peak: peak[1])
        logger.debug(f"Search-back recovered QRS at {position}")
        self._accept(position, value, self._max_slope(position), self.config.searchback_weight)

    def _accept(self, position: int, value: float, slope: float, weight: float) -> None:
        self.spki = weight * value + (1 - weight) * self.spki
        self._update_thresholds()
        if self._last_qrs is not None:
            self._rr_history.append(position - self._last_qrs)
        self._last_qrs = position
        self._last_slope = slope
        self._noise_peaks = [(p, v) for p, v in self._noise_peaks if p > position]
        self._collector.locate(self._locate_r_peak(position))

    def _locate_r_peak(self, position: int) -> int:
        """Raw sample index of the largest filtered amplitude feeding a peak."""
        # The integration window ending at ``position`` covers the QRS slope
        # energy, which lags the filtered signal by the derivative delay
        start = max(position - self._peak_context, self._filtered.tail_index)
        window = np.abs(self._filtered.subrange(start, position + 1))
        peak = start + int(np.argmax(window))
        return peak - self._bandpass.group_delay + self._first_index

    def flush(self) -> List[QrsComplex]:
        """Finalize pending complexes whose trailing window fits the record."""
        if self._last_index is None:
            return []

        completed = []
        hold = self.signal.get(self._last_index)
        for _ in range(self.delay + self._integrator.window):
            qrs = self._step(hold, self._last_index)
            if qrs is not None:
                completed.append(qrs)
        completed.extend(self._collector.drain(self.signal.last_index))
        return completed

    def __repr__(self) -> str:
        return (f"PanTompkinsDetector(fs={self.sampling_rate:g}, "
                f"lead={self.signal.lead.value}, delay={self.delay})")


def detect_r_peaks(
    signal: np.ndarray,
    fs: float,
    config: Optional[PanTompkinsConfig] = None,
    lead: EcgLead = EcgLead.II
) -> np.ndarray:
    """
    Convenience function for Pan-Tompkins R-peak detection on a stored ECG.

    Parameters
    ----------
    signal : np.ndarray
        Raw single-lead ECG samples.
    fs : float
        Sampling frequency in Hz.
    config : PanTompkinsConfig, optional
        Detector configuration.
    lead : EcgLead
        Lead the samples were recorded from.

    Returns
    -------
    np.ndarray
        R-peak sample indices.
    """
    detector = PanTompkinsDetector(EcgSignal.from_array(signal, fs, lead), config)
    return detector.find_r_peaks()
