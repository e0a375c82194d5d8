"""
BeatChain: QRS Detector Abstraction

This module defines what every QRS detector offers and the bookkeeping they
share through composition:
- QrsDetector: per-sample detection interface plus batch helpers
- QrsComplexCollector: waits for each located R-peak's trailing window, runs
  the refinement post-processors, finalizes and links the complex

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Iterator, List, Optional, Sequence

import numpy as np

from beatchain.core.beats import QrsComplex
from beatchain.core.ring_buffer import RingBuffer
from beatchain.core.signal import EcgSignal
from beatchain.detection.refinement import RPeakRefinement


logger = logging.getLogger(__name__)


class QrsDetector(ABC):
    """
    Streaming QRS detector.

    Implementations consume one sample per ``next`` call, in index order,
    from the sample source held in ``signal``. A returned complex is
    finalized: its R-peak is refined and its sample window is complete.

    Live use appends each new sample to the source and calls ``next()``
    without an index; batch use replays a stored record with
    ``find_qrs_complexes``. Both produce the same complexes.
    """

    signal: EcgSignal

    def _check_source_capacity(self, lookback: int) -> None:
        """
        Reject a live source too short to keep a located R-peak until its
        complex is completed.

        ``lookback`` is how far behind the newest processed sample an R-peak
        can be located. Stored recordings are never overwritten and pass.
        """
        collector = self._collector
        required = max(lookback, collector.samples_after + collector.margin) + collector.margin + 1
        if not self.signal.is_stored and self.signal.capacity < required:
            raise ValueError(f"Sample source keeps {self.signal.capacity} samples, "
                             f"{self.__class__.__name__} needs at least {required}")

    @abstractmethod
    def next(self, sample_index: Optional[int] = None) -> Optional[QrsComplex]:
        """
        Process one sample.

        Parameters
        ----------
        sample_index : int, optional
            Index of the sample to process. Defaults to the newest sample of
            the source (live mode).

        Returns
        -------
        QrsComplex or None
            A complex completed by this sample.
        """

    @abstractmethod
    def flush(self) -> List[QrsComplex]:
        """Complete whatever can still be completed at the end of a record."""

    def iter_qrs_complexes(self) -> Iterator[QrsComplex]:
        """Replay every stored sample and yield complexes as they complete."""
        for index in range(self.signal.first_index, len(self.signal)):
            qrs = self.next(index)
            if qrs is not None:
                yield qrs
        yield from self.flush()

    def find_qrs_complexes(self) -> List[QrsComplex]:
        """All complexes of the stored record, in order."""
        return list(self.iter_qrs_complexes())

    def find_r_peaks(self) -> np.ndarray:
        """R-peak sample indices of the stored record."""
        return np.array([qrs.r_position for qrs in self.iter_qrs_complexes()], dtype=int)


class QrsComplexCollector:
    """
    Turns located R-peaks into finalized, linked QRS complexes.

    A located complex is kept pending until the detector has processed the
    sample ``r + samples_after + margin``, where ``margin`` is the context
    the refinement post-processors need. It is then refined, checked against
    the refractory interval, finalized and linked to its predecessor.
    Complexes are completed strictly in the order they were located.

    Parameters
    ----------
    signal : EcgSignal
        Raw sample source.
    samples_before, samples_after : int
        Sample window kept around each R-peak.
    refractory : int
        Minimum distance in samples between two accepted R-peaks.
    post_processors : sequence of RPeakRefinement
        Applied in order to each complex before finalization.
    history_size : int
        Number of recent complexes kept in ``history``.
    template : QrsComplex, optional
        Reference complex; each new complex records its correlation with it.
    """

    def __init__(self, signal: EcgSignal, samples_before: int, samples_after: int,
                 refractory: int, post_processors: Sequence[RPeakRefinement] = (),
                 history_size: int = 30, template: Optional[QrsComplex] = None):
        self.signal = signal
        self.samples_before = int(samples_before)
        self.samples_after = int(samples_after)
        self.refractory = int(refractory)
        self.post_processors = list(post_processors)
        self.margin = max((p.margin for p in self.post_processors), default=0)
        self.history = RingBuffer(history_size, dtype=object)
        self.template = template
        self.n_rejected = 0
        self._pending: Deque[QrsComplex] = deque()

    @property
    def has_pending(self) -> bool:
        return len(self._pending) > 0

    @property
    def last(self) -> Optional[QrsComplex]:
        """Most recently accepted complex."""
        return self.history.head_value if self.history.size else None

    def locate(self, r_position: int) -> QrsComplex:
        """Register a provisional R-peak."""
        qrs = QrsComplex(self.signal, max(int(r_position), 0),
                         self.samples_before, self.samples_after)
        self._pending.append(qrs)
        logger.debug(f"R-peak located at sample {qrs.r_position}")
        return qrs

    def poll(self, processed_index: int) -> Optional[QrsComplex]:
        """Complete the oldest pending complex if its window is collected."""
        while self._pending:
            qrs = self._pending[0]
            if processed_index < qrs.r_position + self.samples_after + self.margin:
                return None
            self._pending.popleft()
            completed = self._complete(qrs)
            if completed is not None:
                return completed
        return None

    def drain(self, last_index: int) -> List[QrsComplex]:
        """
        Complete all pending complexes that fit before ``last_index``.

        Complexes whose trailing window would extend past the end of the
        record are dropped.
        """
        completed = []
        while self._pending:
            qrs = self._pending.popleft()
            if qrs.r_position + self.samples_after + self.margin > last_index:
                logger.debug(f"Dropping QRS at {qrs.r_position}: trailing window past end of record")
                continue
            result = self._complete(qrs)
            if result is not None:
                completed.append(result)
        return completed

    def set_template(self, qrs: QrsComplex) -> None:
        """Use a detached copy of ``qrs`` as the correlation template."""
        self.template = qrs.to_template()

    def _complete(self, qrs: QrsComplex) -> Optional[QrsComplex]:
        for processor in self.post_processors:
            shift = processor.process(qrs)
            if shift:
                logger.debug(f"{processor.__class__.__name__} moved R by {-shift} samples "
                             f"to {qrs.r_position}")

        previous = self.last
        if previous is not None and qrs.r_position - previous.r_position < self.refractory:
            self.n_rejected += 1
            logger.debug(f"Discarding QRS at {qrs.r_position}: within refractory period "
                         f"of {previous.r_position}")
            return None

        qrs.finalize()
        qrs.link_previous(previous)
        if self.template is not None:
            qrs.template_correlation = qrs.cross_correlation(self.template)
        self.history.add(qrs)
        return qrs
