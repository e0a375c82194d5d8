"""
BeatChain: Streaming Digital Filters

This module implements the sample-by-sample filter stages of the detectors:
- DigitalFilter: recursive difference equation with explicit group delay
- MovingAverageFilter: O(1) running-mean FIR filter
- bandpass_filter: Butterworth bandpass taken from a per-sampling-rate table
- FilterPipeline: runs several filters and re-aligns their outputs in time

Unlike offline zero-phase filtering (filtfilt), causal streaming filters
delay their response. Every filter therefore carries its group delay in
samples, which detectors use to map filtered-domain events back onto raw
sample indices.

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import logging                               # Warnings for approximate sampling-rate matches
from dataclasses import dataclass            # Immutable bandpass table entries
from functools import lru_cache              # Each table entry is designed once per process
from typing import Dict, List, Sequence, Tuple  # Type hinting for better code documentation

import numpy as np                           # Coefficient and history arrays
from scipy.signal import butter, group_delay, lfilter  # Filter design, delay estimation, batch filtering

from beatchain.core.ring_buffer import RingBuffer


logger = logging.getLogger(__name__)


# Sampling rates with a tabulated bandpass design (Hz)
SUPPORTED_SAMPLING_RATES: Tuple[int, ...] = (
    50, 100, 150, 250, 256, 360, 500, 512, 1000, 1024, 1500, 2000, 5000
)

# Pass bands (Hz) and Butterworth orders of the tabulated designs
QRS_BAND = (8.0, 21.0, 4)
PAN_TOMPKINS_BAND = (5.0, 15.0, 2)


class InvalidFilterSpec(ValueError):
    """Raised when filter coefficients cannot describe a working filter."""


class DigitalFilter:
    """
    Causal IIR/FIR filter evaluated one sample at a time.

    Implements ``y[0] = (sum(b[i] * x[i]) - sum(a[i] * y[i], i >= 1)) / a[0]``
    where ``x[i]`` and ``y[i]`` are the input and output ``i`` samples ago.

    Parameters
    ----------
    b : sequence of float
        Numerator (feed-forward) coefficients.
    a : sequence of float, default=(1.0,)
        Denominator (feedback) coefficients. ``(1.0,)`` gives an FIR filter.
    group_delay : int, default=0
        Samples by which the output lags the event it responds to.

    Raises
    ------
    InvalidFilterSpec
        If ``b`` is empty or all zero, or if ``a`` is empty or ``a[0] == 0``.

    Example
    -------
    >>> smoother = DigitalFilter([0.25, 0.5, 0.25], group_delay=1)
    >>> [smoother.next(x) for x in (0.0, 4.0, 0.0)]
    [0.0, 1.0, 2.0]
    """

    def __init__(self, b: Sequence[float], a: Sequence[float] = (1.0,),
                 group_delay: int = 0):
        b = np.atleast_1d(np.asarray(b, dtype=float))
        a = np.atleast_1d(np.asarray(a, dtype=float))

        if b.size == 0 or not np.any(b):
            raise InvalidFilterSpec("Numerator coefficients must contain a non-zero value")
        if a.size == 0 or a[0] == 0:
            raise InvalidFilterSpec("Leading denominator coefficient must be non-zero")
        if group_delay < 0:
            raise InvalidFilterSpec(f"group_delay must be >= 0, got {group_delay}")

        self.b = b
        self.a = a
        self.group_delay = int(group_delay)
        self._x = np.zeros(len(b))
        self._y = np.zeros(len(a))

    def next(self, x: float) -> float:
        """Feed one input sample and return the corresponding output."""
        self._x[1:] = self._x[:-1]
        self._x[0] = x
        self._y[1:] = self._y[:-1]

        acc = float(np.dot(self.b, self._x))
        if len(self.a) > 1:
            acc -= float(np.dot(self.a[1:], self._y[1:]))
        self._y[0] = acc / self.a[0]
        return self._y[0]

    @property
    def current(self) -> float:
        """Most recent output."""
        return float(self._y[0])

    def reset(self) -> None:
        """Clear the input and output histories."""
        self._x[:] = 0.0
        self._y[:] = 0.0

    def apply(self, signal: np.ndarray) -> np.ndarray:
        """
        Filter a whole array from a zero state without touching the
        streaming state. Matches feeding ``signal`` into a fresh filter.
        """
        return lfilter(self.b, self.a, np.asarray(signal, dtype=float))

    def __repr__(self) -> str:
        return (f"{self.__class__.__name__}(n_b={len(self.b)}, n_a={len(self.a)}, "
                f"group_delay={self.group_delay})")


class MovingAverageFilter(DigitalFilter):
    """
    Running mean over the last ``window`` samples.

    Equivalent to ``DigitalFilter(np.ones(window) / window)`` but evaluated
    in constant time from a running sum over a RingBuffer. The group delay
    is ``window // 2``.
    """

    # Running sums are recomputed from scratch this often to bound drift
    RESYNC_INTERVAL = 4096

    def __init__(self, window: int):
        if window < 1:
            raise InvalidFilterSpec(f"Moving average window must be >= 1, got {window}")
        super().__init__(np.full(window, 1.0 / window), group_delay=window // 2)
        self.window = int(window)
        self._inputs = RingBuffer(self.window)
        self._inputs.extend(np.zeros(self.window))
        self._sum = 0.0
        self._since_resync = 0

    def next(self, x: float) -> float:
        self._sum += x - self._inputs.get(-self.window)
        self._inputs.add(x)

        self._since_resync += 1
        if self._since_resync >= self.RESYNC_INTERVAL:
            self._sum = float(np.sum(self._inputs.to_array()))
            self._since_resync = 0

        self._y[0] = self._sum / self.window
        return self._y[0]

    def reset(self) -> None:
        super().reset()
        self._inputs.clear()
        self._inputs.extend(np.zeros(self.window))
        self._sum = 0.0
        self._since_resync = 0

    def __repr__(self) -> str:
        return f"MovingAverageFilter(window={self.window}, group_delay={self.group_delay})"


@dataclass(frozen=True)
class BandpassDesign:
    """One entry of the bandpass coefficient table."""
    sampling_rate: int
    low_hz: float
    high_hz: float
    order: int
    b: Tuple[float, ...]
    a: Tuple[float, ...]
    group_delay: int

    def create_filter(self) -> DigitalFilter:
        return DigitalFilter(self.b, self.a, self.group_delay)


@lru_cache(maxsize=None)
def _design_bandpass(sampling_rate: int, low_hz: float, high_hz: float,
                     order: int) -> BandpassDesign:
    b, a = butter(order, [low_hz, high_hz], btype='band', fs=sampling_rate)

    # Delay of the QRS energy band, taken as the worst case over the pass band
    freqs = np.linspace(low_hz, high_hz, 64)
    _, delays = group_delay((b, a), w=freqs, fs=sampling_rate)
    delay = int(round(float(np.max(delays))))

    logger.debug(f"Designed {low_hz:g}-{high_hz:g} Hz bandpass for {sampling_rate} Hz, "
                 f"group delay {delay} samples")
    return BandpassDesign(sampling_rate, low_hz, high_hz, order,
                          tuple(b), tuple(a), delay)


def nearest_supported_rate(sampling_rate: float) -> int:
    """Closest sampling rate that has a tabulated bandpass design."""
    return min(SUPPORTED_SAMPLING_RATES, key=lambda rate: abs(rate - sampling_rate))


def bandpass_table(low_hz: float = QRS_BAND[0], high_hz: float = QRS_BAND[1],
                   order: int = QRS_BAND[2]) -> Dict[int, BandpassDesign]:
    """Bandpass designs for every supported sampling rate."""
    return {
        rate: _design_bandpass(rate, low_hz, high_hz, order)
        for rate in SUPPORTED_SAMPLING_RATES
        if high_hz < rate / 2
    }


def bandpass_filter(sampling_rate: float, low_hz: float = QRS_BAND[0],
                    high_hz: float = QRS_BAND[1], order: int = QRS_BAND[2]) -> DigitalFilter:
    """
    Streaming Butterworth bandpass for ``sampling_rate``.

    Coefficients come from the table entry of the nearest supported rate;
    they are never interpolated between rates.

    Parameters
    ----------
    sampling_rate : float
        Sampling frequency in Hz.
    low_hz, high_hz : float
        Pass band edges in Hz. Defaults to the 8-21 Hz QRS band.
    order : int
        Butterworth order per band edge (transfer function order is 2x).

    Returns
    -------
    DigitalFilter
        Fresh filter with its group delay set.
    """
    rate = nearest_supported_rate(sampling_rate)
    if rate != sampling_rate:
        logger.warning(f"No bandpass design for {sampling_rate:g} Hz, "
                       f"using the {rate} Hz coefficients")
    if high_hz >= rate / 2:
        raise InvalidFilterSpec(f"Upper cutoff {high_hz:g} Hz is above the Nyquist "
                                f"frequency of {rate} Hz")
    return _design_bandpass(rate, float(low_hz), float(high_hz), int(order)).create_filter()


class FilterPipeline:
    """
    Runs several filters on the same input and aligns their outputs.

    Filters with a shorter group delay produce their response earlier than
    the slowest one. The pipeline keeps a short output history per filter
    and reads it back at ``max_group_delay - group_delay`` samples, so all
    returned values refer to the same instant of the input.

    Parameters
    ----------
    filters : sequence of DigitalFilter
        Filters fed with the same input stream.

    Example
    -------
    >>> pipeline = FilterPipeline([MovingAverageFilter(25), MovingAverageFilter(153)])
    >>> aligned = pipeline.next(sample)   # array of two time-aligned averages
    """

    def __init__(self, filters: Sequence[DigitalFilter]):
        if len(filters) == 0:
            raise ValueError("FilterPipeline needs at least one filter")
        self.filters: List[DigitalFilter] = list(filters)
        self.max_group_delay = max(f.group_delay for f in self.filters)
        self._lags = [self.max_group_delay - f.group_delay for f in self.filters]
        self._histories = [RingBuffer(lag + 1) for lag in self._lags]
        self._output = np.zeros(len(self.filters))

    def next(self, x: float) -> np.ndarray:
        """
        Feed one sample to every filter.

        Returns
        -------
        np.ndarray
            Aligned outputs in filter order. Entries whose history is not yet
            deep enough are 0.0.
        """
        for i, (filt, history, lag) in enumerate(zip(self.filters, self._histories, self._lags)):
            history.add(filt.next(x))
            position = history.size - 1 - lag
            # a negative position would be read relative to the head
            valid = position >= 0 and history.is_valid(position)
            self._output[i] = history.get(position) if valid else 0.0
        return self._output.copy()

    def reset(self) -> None:
        for filt, history in zip(self.filters, self._histories):
            filt.reset()
            history.clear()

    def __len__(self) -> int:
        return len(self.filters)

    def __repr__(self) -> str:
        delays = [f.group_delay for f in self.filters]
        return f"FilterPipeline(n_filters={len(self.filters)}, group_delays={delays})"


def moving_average_pipeline(windows: Sequence[int]) -> FilterPipeline:
    """Aligned moving averages for each window length (in samples)."""
    return FilterPipeline([MovingAverageFilter(max(int(w), 1)) for w in windows])
