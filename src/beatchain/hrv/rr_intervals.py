"""
BeatChain: RR Interval Series

This module provides the mutable, linked RR-interval sequence the outlier
correction operates on:
- RRInterval: one interval with its reference value and outlier flag
- RRIntervalList: list-like container that keeps neighbour links consistent
  through every insertion, deletion and replacement

Values and timestamps are in samples; the timestamp of an interval is the
midpoint between its two R-peaks.

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import weakref                               # Non-owning neighbour links
from collections.abc import MutableSequence  # List protocol with splice hooks
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd                          # Tabular export for downstream HRV tools

from beatchain.core.beats import Heartbeat


@dataclass(eq=False)
class RRInterval:
    """
    Time between two consecutive R-peaks.

    Attributes
    ----------
    value : float
        Interval length in samples.
    timestamp : float
        Midpoint between the two R-peaks, in samples.
    reference : float
        Median of the most recent accepted intervals (set by the corrector).
    outlier : bool
        Whether the interval was flagged or synthesized by the corrector.
    r_peak1, r_peak2 : int
        Sample indices of the delimiting R-peaks.
    inserted : bool
        True for intervals synthesized to fill a missed beat.
    interpolated : bool
        True once the value was replaced by spline interpolation.
    """
    value: float
    timestamp: float
    reference: float = 0.0
    outlier: bool = False
    r_peak1: int = -1
    r_peak2: int = -1
    inserted: bool = False
    interpolated: bool = False
    _previous: Any = field(default=None, repr=False)
    _next: Any = field(default=None, repr=False)

    @classmethod
    def between(cls, r_peak1: int, r_peak2: int) -> 'RRInterval':
        """Interval delimited by two R-peak sample indices."""
        return cls(
            value=float(r_peak2 - r_peak1),
            timestamp=(r_peak1 + r_peak2) / 2.0,
            r_peak1=int(r_peak1),
            r_peak2=int(r_peak2),
        )

    @property
    def previous(self) -> Optional['RRInterval']:
        return self._previous() if self._previous is not None else None

    @previous.setter
    def previous(self, interval: Optional['RRInterval']) -> None:
        self._previous = weakref.ref(interval) if interval is not None else None

    @property
    def next(self) -> Optional['RRInterval']:
        return self._next() if self._next is not None else None

    @next.setter
    def next(self, interval: Optional['RRInterval']) -> None:
        self._next = weakref.ref(interval) if interval is not None else None

    def __getstate__(self):
        # weak references cannot be pickled; RRIntervalList relinks on load
        state = self.__dict__.copy()
        state['_previous'] = state['_next'] = None
        return state

    def value_ms(self, sampling_rate: float) -> float:
        return 1000.0 * self.value / sampling_rate

    def to_dict(self):
        return {
            'value': self.value,
            'timestamp': self.timestamp,
            'reference': self.reference,
            'outlier': self.outlier,
            'r_peak1': self.r_peak1,
            'r_peak2': self.r_peak2,
            'inserted': self.inserted,
            'interpolated': self.interpolated,
        }


class RRIntervalList(MutableSequence):
    """
    Ordered RR intervals with consistent prev/next links.

    Every structural edit relinks the affected neighbours in the same
    operation, so ``self[i].next is self[i + 1]`` and
    ``self[i + 1].previous is self[i]`` hold after any edit.

    Parameters
    ----------
    intervals : iterable of RRInterval, optional
        Initial content.
    sampling_rate : float
        Sampling frequency the sample-valued intervals refer to.

    Example
    -------
    >>> rr = RRIntervalList.from_r_peaks([100, 300, 500, 700], sampling_rate=250)
    >>> rr.values()
    array([200., 200., 200.])
    >>> del rr[1]          # rr[0].next is now the former rr[2]
    """

    def __init__(self, intervals: Optional[Iterable[RRInterval]] = None,
                 sampling_rate: float = 1000.0):
        self.sampling_rate = float(sampling_rate)
        self._items: List[RRInterval] = []
        for interval in intervals or []:
            self.append(interval)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_r_peaks(cls, r_peaks: Sequence[int], sampling_rate: float) -> 'RRIntervalList':
        """Intervals between consecutive R-peak sample indices."""
        r_peaks = np.asarray(r_peaks, dtype=int)
        return cls((RRInterval.between(a, b) for a, b in zip(r_peaks[:-1], r_peaks[1:])),
                   sampling_rate)

    @classmethod
    def from_heartbeats(cls, beats: Sequence[Heartbeat]) -> 'RRIntervalList':
        """Intervals between consecutive heartbeats."""
        if len(beats) == 0:
            return cls()
        return cls.from_r_peaks([beat.r_position for beat in beats], beats[0].sampling_rate)

    @classmethod
    def from_values(cls, values: Sequence[float], sampling_rate: float,
                    start: int = 0) -> 'RRIntervalList':
        """Intervals from their lengths in samples, starting at R-peak ``start``."""
        r_peaks = start + np.concatenate(([0.0], np.cumsum(values)))
        return cls.from_r_peaks(np.round(r_peaks).astype(int), sampling_rate)

    # ------------------------------------------------------------------
    # MutableSequence protocol
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return self._items[index]
        return self._items[index]

    def __setitem__(self, index: int, interval: RRInterval) -> None:
        if isinstance(index, slice):
            raise TypeError("Slice assignment is not supported")
        index = self._normalize(index)
        self._items[index] = interval
        self._relink(index)

    def __delitem__(self, index: int) -> None:
        if isinstance(index, slice):
            for i in sorted(range(*index.indices(len(self))), reverse=True):
                del self[i]
            return
        index = self._normalize(index)
        removed = self._items.pop(index)
        removed.previous = None
        removed.next = None
        if index < len(self._items):
            self._relink(index)
        elif self._items:
            self._items[-1].next = None

    def insert(self, index: int, interval: RRInterval) -> None:
        index = max(0, min(index if index >= 0 else len(self) + index, len(self)))
        self._items.insert(index, interval)
        self._relink(index)

    def __setstate__(self, state):
        self.__dict__.update(state)
        for index in range(len(self._items)):
            self._relink(index)

    def _normalize(self, index: int) -> int:
        if index < 0:
            index += len(self._items)
        if not 0 <= index < len(self._items):
            raise IndexError("RR interval index out of range")
        return index

    def _relink(self, index: int) -> None:
        """Point ``self[index]`` and its neighbours at each other."""
        item = self._items[index]
        previous = self._items[index - 1] if index > 0 else None
        following = self._items[index + 1] if index + 1 < len(self._items) else None

        item.previous = previous
        item.next = following
        if previous is not None:
            previous.next = item
        if following is not None:
            following.previous = item

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def values(self) -> np.ndarray:
        return np.array([rr.value for rr in self._items], dtype=float)

    def values_ms(self) -> np.ndarray:
        return 1000.0 * self.values() / self.sampling_rate

    def timestamps(self) -> np.ndarray:
        return np.array([rr.timestamp for rr in self._items], dtype=float)

    def outlier_mask(self) -> np.ndarray:
        return np.array([rr.outlier for rr in self._items], dtype=bool)

    def links_consistent(self) -> bool:
        """Check the prev/next invariant over the whole list."""
        for i, rr in enumerate(self._items):
            expected_prev = self._items[i - 1] if i > 0 else None
            expected_next = self._items[i + 1] if i + 1 < len(self._items) else None
            if rr.previous is not expected_prev or rr.next is not expected_next:
                return False
        return True

    def to_dataframe(self) -> pd.DataFrame:
        """One row per interval, with the value also given in milliseconds."""
        frame = pd.DataFrame([rr.to_dict() for rr in self._items],
                             columns=['value', 'timestamp', 'reference', 'outlier', 'r_peak1',
                                      'r_peak2', 'inserted', 'interpolated'])
        frame['value_ms'] = 1000.0 * frame['value'] / self.sampling_rate
        return frame

    def __repr__(self) -> str:
        return (f"RRIntervalList(n={len(self)}, fs={self.sampling_rate:g}, "
                f"outliers={int(self.outlier_mask().sum()) if len(self) else 0})")
