"""
BeatChain: Heartbeat Assembly

This module links detected QRS complexes into a doubly-linked chain of
heartbeats:
- WaveSearch: capability interface of P-wave and T-wave search algorithms
- HeartbeatAssembler: drives a QRS detector and finalizes each beat once the
  next one has been detected

A beat is reported one detection cycle late: its P and T wave searches need
samples that belong to the territory of the following beat.

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import logging
from typing import Callable, Iterator, List, Optional, Protocol, Sequence, Union, runtime_checkable

import numpy as np

from beatchain.core.beats import Heartbeat, QrsComplex, WaveMorphology
from beatchain.core.ring_buffer import RingBuffer
from beatchain.core.signal import Ecg, EcgLead, EcgSignal
from beatchain.detection.base import QrsDetector
from beatchain.detection.elgendi import ElgendiConfig, ElgendiQrsDetector


logger = logging.getLogger(__name__)

BeatCallback = Callable[[Heartbeat], None]


@runtime_checkable
class WaveSearch(Protocol):
    """Finds a P or T wave belonging to a QRS complex."""

    def find_wave(self, signal: EcgSignal, qrs: QrsComplex) -> Optional[WaveMorphology]:
        """Return the wave morphology, or None if no wave was found."""
        ...


class HeartbeatAssembler:
    """
    Builds the heartbeat chain from a QRS detector's output.

    When QRS[n+1] is detected, beat n gets its ``next`` link, beat n+1 its
    ``previous`` link, the wave searches run on beat n, and beat n is
    emitted. ``flush`` emits the last beat at the end of a record.

    Parameters
    ----------
    detector : QrsDetector
        Source of QRS complexes.
    p_wave_search, t_wave_search : WaveSearch, optional
        Wave delineation collaborators.
    on_beat : callable, optional
        Called with every finalized heartbeat.
    history_size : int, default=32
        Number of recent beats kept in ``history``.

    Example
    -------
    >>> assembler = HeartbeatAssembler(ElgendiQrsDetector(ecg))
    >>> for beat in assembler.iter_heartbeats():
    ...     print(beat.r_position, beat.heart_rate_bpm)
    """

    def __init__(
        self,
        detector: QrsDetector,
        p_wave_search: Optional[WaveSearch] = None,
        t_wave_search: Optional[WaveSearch] = None,
        on_beat: Optional[BeatCallback] = None,
        history_size: int = 32
    ):
        self.detector = detector
        self.p_wave_search = p_wave_search
        self.t_wave_search = t_wave_search
        self.on_beat = on_beat
        self.history = RingBuffer(history_size, dtype=object)
        self.n_emitted = 0

    @property
    def signal(self) -> EcgSignal:
        return self.detector.signal

    @property
    def current(self) -> Optional[Heartbeat]:
        """Latest beat, still waiting for its successor."""
        return self.history.head_value if self.history.size else None

    def next(self, sample_index: Optional[int] = None) -> Optional[Heartbeat]:
        """
        Process one sample.

        Returns
        -------
        Heartbeat or None
            The beat finalized by this sample, if any.
        """
        qrs = self.detector.next(sample_index)
        if qrs is None:
            return None
        return self._on_qrs_complex(qrs)

    def push(self, sample: Union[float, Sequence[float]], ecg: Optional[Ecg] = None) -> Optional[Heartbeat]:
        """
        Live mode: append a sample to the source and process it.

        Parameters
        ----------
        sample : float or sequence of float
            New sample; one value per lead when ``ecg`` is given.
        ecg : Ecg, optional
            Multi-lead recording the detector reads from. Without it the
            sample is appended to the detector's signal directly.
        """
        if ecg is not None:
            ecg.append(sample)
        else:
            self.signal.append(float(sample))
        return self.next()

    def flush(self) -> List[Heartbeat]:
        """Drain the detector and finalize the remaining beats."""
        emitted = []
        for qrs in self.detector.flush():
            beat = self._on_qrs_complex(qrs)
            if beat is not None:
                emitted.append(beat)

        last = self.current
        if last is not None and not last.is_finalized:
            self._finalize(last)
            emitted.append(last)
        return emitted

    def iter_heartbeats(self) -> Iterator[Heartbeat]:
        """Replay the stored signal and yield heartbeats as they finalize."""
        for index in range(self.signal.first_index, len(self.signal)):
            beat = self.next(index)
            if beat is not None:
                yield beat
        yield from self.flush()

    def find_heartbeats(self) -> List[Heartbeat]:
        """All heartbeats of the stored signal, in order."""
        return list(self.iter_heartbeats())

    def _on_qrs_complex(self, qrs: QrsComplex) -> Optional[Heartbeat]:
        beat = qrs.heartbeat
        previous = self.current
        self.history.add(beat)
        if previous is None:
            return None

        previous.next = beat
        beat.previous = previous
        self._finalize(previous)
        return previous

    def _finalize(self, beat: Heartbeat) -> None:
        beat.p_wave = self._search(self.p_wave_search, beat.qrs, "P")
        beat.t_wave = self._search(self.t_wave_search, beat.qrs, "T")
        beat.is_finalized = True
        self.n_emitted += 1
        if self.on_beat is not None:
            self.on_beat(beat)

    def _search(self, search: Optional[WaveSearch], qrs: QrsComplex,
                wave: str) -> Optional[WaveMorphology]:
        if search is None:
            return None
        try:
            return search.find_wave(self.signal, qrs)
        except Exception as e:
            logger.warning(f"{wave}-wave search failed for QRS at {qrs.r_position}: {e}")
            return None

    def __repr__(self) -> str:
        return (f"HeartbeatAssembler(detector={self.detector.__class__.__name__}, "
                f"emitted={self.n_emitted})")


def find_heartbeats(
    signal: np.ndarray,
    fs: float,
    p_wave_search: Optional[WaveSearch] = None,
    t_wave_search: Optional[WaveSearch] = None,
    config: Optional[ElgendiConfig] = None,
    lead: EcgLead = EcgLead.II
) -> List[Heartbeat]:
    """
    Convenience function to assemble the heartbeat chain of a stored ECG.

    Parameters
    ----------
    signal : np.ndarray
        Raw single-lead ECG samples.
    fs : float
        Sampling frequency in Hz.
    p_wave_search, t_wave_search : WaveSearch, optional
        Wave delineation collaborators.
    config : ElgendiConfig, optional
        Detector configuration.
    lead : EcgLead
        Lead the samples were recorded from.

    Returns
    -------
    List[Heartbeat]
        Finalized heartbeats linked to their neighbours.
    """
    detector = ElgendiQrsDetector(EcgSignal.from_array(signal, fs, lead), config)
    return HeartbeatAssembler(detector, p_wave_search, t_wave_search).find_heartbeats()
