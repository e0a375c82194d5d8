"""
BeatChain: Ring Buffer for Streaming ECG Processing

This module implements the fixed-capacity buffer every streaming stage of the
beat detector is built on:
- RingBuffer: append-only, overwrite-on-full storage addressed by lifetime index
- StaleIndexError: raised when an index has already been overwritten
- MinMax: extremes of the retrievable window

Lifetime indexing means the n-th value ever added keeps index n for as long as
it is retrievable, no matter how often the physical slots wrapped around.

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

from dataclasses import dataclass            # Lightweight result container for buffer extremes
from typing import Any, Iterator, Optional   # Type hinting for better code documentation
import numpy as np                           # Preallocated storage for O(1) appends


class StaleIndexError(IndexError):
    """Raised when a lifetime index is outside the retrievable window."""

    def __init__(self, index: int, tail: int, size: int):
        self.index = index
        self.tail = tail
        self.size = size
        super().__init__(
            f"Index {index} is outside the retrievable window [{tail}, {size})"
        )


@dataclass(frozen=True)
class MinMax:
    """Minimum and maximum of a buffer together with their lifetime indices."""
    min_value: float
    min_index: int
    max_value: float
    max_index: int

    @property
    def span(self) -> float:
        """Peak-to-peak amplitude."""
        return self.max_value - self.min_value


class RingBuffer:
    """
    Fixed-capacity buffer that overwrites its oldest slot once full.

    Values are addressed by their lifetime index: the first value ever added
    has index 0, the next one index 1, and so on. Only the ``capacity`` most
    recent indices are retrievable; reading an older one raises
    ``StaleIndexError`` instead of returning whatever now occupies the slot.

    Parameters
    ----------
    capacity : int
        Maximum number of retrievable values.
    dtype : numpy dtype, default=float
        Storage type. Use ``object`` to keep arbitrary records.

    Example
    -------
    >>> buf = RingBuffer(3)
    >>> buf.extend([1.0, 2.0, 3.0, 4.0])
    >>> buf.get(-1), buf.get(1), buf.is_valid(0)
    (4.0, 2.0, False)

    Notes
    -----
    - ``add`` is O(1) and never reallocates
    - Negative indices count back from the most recent value (-1 = newest)
    - ``len(buf)`` is the number of retrievable values, ``buf.size`` the
      lifetime count
    """

    def __init__(self, capacity: int, dtype: Any = float):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = int(capacity)
        self.dtype = np.dtype(dtype)
        self._data = np.zeros(self.capacity, dtype=self.dtype)
        self._size = 0
        self._numeric = np.issubdtype(self.dtype, np.number)

    @classmethod
    def from_array(cls, values, dtype: Any = float) -> 'RingBuffer':
        """Create a buffer exactly large enough to hold ``values``."""
        values = np.asarray(values, dtype=dtype)
        buf = cls(max(len(values), 1), dtype=dtype)
        buf.extend(values)
        return buf

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def add(self, value: Any) -> int:
        """
        Append a value, overwriting the oldest one if the buffer is full.

        Returns
        -------
        int
            Lifetime index assigned to the value.
        """
        index = self._size
        self._data[index % self.capacity] = value
        self._size += 1
        return index

    def extend(self, values) -> None:
        """Append several values in order."""
        for value in values:
            self.add(value)

    def clear(self) -> None:
        """Forget all values and restart lifetime indexing at 0."""
        self._data[:] = 0 if self._numeric else None
        self._size = 0

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        """Number of values added over the buffer's lifetime."""
        return self._size

    @property
    def filled_size(self) -> int:
        """Number of currently retrievable values (capped at capacity)."""
        return min(self._size, self.capacity)

    @property
    def tail_index(self) -> int:
        """Lifetime index of the oldest retrievable value."""
        return self._size - self.filled_size

    @property
    def head_index(self) -> int:
        """Lifetime index of the newest value (-1 when empty)."""
        return self._size - 1

    @property
    def head_value(self) -> Any:
        """Most recently added value."""
        return self.get(-1)

    def _resolve(self, index: int) -> int:
        index = int(index)
        return self._size + index if index < 0 else index

    def is_valid(self, index: int) -> bool:
        """Check whether a lifetime (or negative relative) index is retrievable."""
        index = self._resolve(index)
        return self.tail_index <= index < self._size

    def get(self, index: int) -> Any:
        """
        Retrieve a value by lifetime index.

        Parameters
        ----------
        index : int
            Lifetime index, or a negative index relative to the head.

        Raises
        ------
        StaleIndexError
            If the index was overwritten already or has not been written yet.
        """
        resolved = self._resolve(index)
        if not self.tail_index <= resolved < self._size:
            raise StaleIndexError(resolved, self.tail_index, self._size)
        return self._data[resolved % self.capacity]

    def __getitem__(self, index: int) -> Any:
        return self.get(index)

    def subrange(self, start: int, stop: int) -> np.ndarray:
        """
        Copy the values with lifetime indices in ``[start, stop)``.

        The result never shares memory with the buffer, so it stays valid
        while streaming continues.
        """
        start = self._resolve(start)
        stop = self._resolve(stop)
        if stop <= start:
            return np.empty(0, dtype=self.dtype)
        if not (self.is_valid(start) and self.is_valid(stop - 1)):
            bad = start if not self.is_valid(start) else stop - 1
            raise StaleIndexError(bad, self.tail_index, self._size)

        first = start % self.capacity
        last = (stop - 1) % self.capacity
        if first <= last:
            return self._data[first:last + 1].copy()
        return np.concatenate((self._data[first:], self._data[:last + 1]))

    def to_array(self) -> np.ndarray:
        """Copy of the retrievable window in insertion order."""
        return self.subrange(self.tail_index, self._size)

    def __len__(self) -> int:
        return self.filled_size

    def __iter__(self) -> Iterator[Any]:
        for index in range(self.tail_index, self._size):
            yield self._data[index % self.capacity]

    # ------------------------------------------------------------------
    # Extremes
    # ------------------------------------------------------------------

    def min_max(self) -> Optional[MinMax]:
        """
        Extremes of the retrievable window.

        Returns
        -------
        MinMax or None
            None when the buffer is empty.
        """
        if self._size == 0:
            return None
        if not self._numeric:
            raise TypeError(f"min_max() requires a numeric buffer, not {self.dtype}")

        window = self.to_array()
        tail = self.tail_index
        low = int(np.argmin(window))
        high = int(np.argmax(window))
        return MinMax(
            min_value=float(window[low]),
            min_index=tail + low,
            max_value=float(window[high]),
            max_index=tail + high,
        )

    def __repr__(self) -> str:
        return (f"RingBuffer(capacity={self.capacity}, size={self._size}, "
                f"dtype={self.dtype})")
