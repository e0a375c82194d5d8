"""
BeatChain: ECG Sample Sources

This module implements the sample source consumed by the detectors:
- EcgLead: standard lead identifiers
- EcgSignal: one lead, stored in a RingBuffer and addressed by sample index
- Ecg: a multi-lead recording with best-matching lead resolution

The same classes serve batch replay (the whole record is loaded up front) and
live acquisition (samples are appended while the detector runs).

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from beatchain.core.ring_buffer import RingBuffer


logger = logging.getLogger(__name__)


class EcgLead(Enum):
    """Electrode configurations an ECG channel can be recorded from."""
    I = "I"
    II = "II"
    III = "III"
    AVR = "aVR"
    AVL = "aVL"
    AVF = "aVF"
    V1 = "V1"
    V2 = "V2"
    V3 = "V3"
    V4 = "V4"
    V5 = "V5"
    V6 = "V6"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str) -> 'EcgLead':
        """Map a lead label such as ``'MLII'`` or ``'avf'`` to an EcgLead."""
        label = name.strip().upper()
        if label.startswith("ML"):
            label = label[2:]
        for lead in cls:
            if lead.value.upper() == label:
                return lead
        return cls.UNKNOWN


# Leads ordered by how closely their QRS projection resembles the key lead.
LEAD_SIMILARITY: Dict[EcgLead, List[EcgLead]] = {
    EcgLead.II: [EcgLead.AVF, EcgLead.I, EcgLead.III, EcgLead.V5, EcgLead.V6, EcgLead.V4],
    EcgLead.I: [EcgLead.AVL, EcgLead.II, EcgLead.V6, EcgLead.V5],
    EcgLead.III: [EcgLead.AVF, EcgLead.II],
    EcgLead.AVF: [EcgLead.II, EcgLead.III],
    EcgLead.AVL: [EcgLead.I, EcgLead.V6],
    EcgLead.V5: [EcgLead.V6, EcgLead.V4, EcgLead.II],
    EcgLead.V6: [EcgLead.V5, EcgLead.I],
}


class EcgSignal:
    """
    One ECG lead addressed by absolute sample index.

    Parameters
    ----------
    sampling_rate : float
        Sampling frequency in Hz.
    lead : EcgLead
        Lead this signal was recorded from.
    capacity : int
        Number of samples kept. Older samples become stale.

    Attributes
    ----------
    is_stored : bool
        True for a wrapped recording, which is never overwritten. Appending
        a live sample clears it.

    Example
    -------
    >>> sig = EcgSignal.from_array(np.zeros(1000), 250, EcgLead.II)
    >>> sig.get(10), len(sig)
    (0.0, 1000)
    """

    def __init__(self, sampling_rate: float, lead: EcgLead = EcgLead.UNKNOWN,
                 capacity: int = 10000):
        if sampling_rate <= 0:
            raise ValueError(f"sampling_rate must be positive, got {sampling_rate}")
        self.sampling_rate = float(sampling_rate)
        self.lead = lead
        self._buffer = RingBuffer(capacity)
        self.is_stored = False

    @classmethod
    def from_array(cls, samples, sampling_rate: float,
                   lead: EcgLead = EcgLead.UNKNOWN) -> 'EcgSignal':
        """Wrap a complete recording (batch mode)."""
        samples = np.asarray(samples, dtype=float)
        signal = cls(sampling_rate, lead, capacity=max(len(samples), 1))
        signal.extend(samples)
        signal.is_stored = True
        return signal

    def append(self, value: float) -> int:
        """Append a live sample and return its index."""
        self.is_stored = False
        return self._buffer.add(value)

    def extend(self, values) -> None:
        self._buffer.extend(values)

    def get(self, index: int) -> float:
        """Sample at ``index``; raises ``StaleIndexError`` if unavailable."""
        return float(self._buffer.get(index))

    get_sample = get

    def is_available(self, index: int) -> bool:
        return index >= 0 and self._buffer.is_valid(index)

    def subrange(self, start: int, stop: int) -> np.ndarray:
        """Copy of the samples in ``[start, stop)``."""
        return self._buffer.subrange(start, stop)

    @property
    def first_index(self) -> int:
        """Oldest sample index still retrievable."""
        return self._buffer.tail_index

    @property
    def last_index(self) -> int:
        """Newest sample index (-1 while empty)."""
        return self._buffer.head_index

    @property
    def head_value(self) -> float:
        return float(self._buffer.head_value)

    @property
    def capacity(self) -> int:
        return self._buffer.capacity

    def to_array(self) -> np.ndarray:
        return self._buffer.to_array()

    def __len__(self) -> int:
        """Number of samples received so far."""
        return self._buffer.size

    def __repr__(self) -> str:
        return (f"EcgSignal(lead={self.lead.value}, fs={self.sampling_rate:g}, "
                f"n_samples={len(self)})")


class Ecg:
    """
    Multi-lead ECG recording.

    Parameters
    ----------
    sampling_rate : float
        Sampling frequency in Hz.
    leads : sequence of EcgLead
        Lead of each channel, in channel order.
    capacity : int
        Samples kept per lead.

    Example
    -------
    >>> ecg = Ecg.from_array(data, 500, leads=[EcgLead.I, EcgLead.II])
    >>> ecg.best_matching_signal(EcgLead.II).lead
    <EcgLead.II: 'II'>
    """

    def __init__(self, sampling_rate: float,
                 leads: Sequence[EcgLead] = (EcgLead.II,),
                 capacity: int = 10000):
        if len(leads) == 0:
            raise ValueError("An ECG needs at least one lead")
        self.sampling_rate = float(sampling_rate)
        self.leads = list(leads)
        self.signals = [EcgSignal(sampling_rate, lead, capacity) for lead in self.leads]

    @classmethod
    def from_array(cls, data, sampling_rate: float,
                   leads: Optional[Sequence[EcgLead]] = None) -> 'Ecg':
        """
        Wrap a stored recording.

        Parameters
        ----------
        data : np.ndarray
            Samples, shape (n_samples,) or (n_samples, n_leads).
        sampling_rate : float
            Sampling frequency in Hz.
        leads : sequence of EcgLead, optional
            Lead of each column. A single column defaults to lead II.
        """
        data = np.asarray(data, dtype=float)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if data.ndim != 2:
            raise ValueError(f"Expected 1D or 2D samples, got shape {data.shape}")

        n_leads = data.shape[1]
        if leads is None:
            leads = [EcgLead.II] if n_leads == 1 else [EcgLead.UNKNOWN] * n_leads
        if len(leads) != n_leads:
            raise ValueError(f"{len(leads)} lead labels for {n_leads} channels")

        ecg = cls(sampling_rate, leads, capacity=max(data.shape[0], 1))
        for column, signal in enumerate(ecg.signals):
            signal.extend(data[:, column])
            signal.is_stored = True
        return ecg

    def append(self, sample: Union[float, Sequence[float]]) -> int:
        """Append one sample per lead (live mode) and return its index."""
        values = np.atleast_1d(np.asarray(sample, dtype=float))
        if len(values) != len(self.signals):
            raise ValueError(f"Expected {len(self.signals)} values, got {len(values)}")
        index = -1
        for signal, value in zip(self.signals, values):
            index = signal.append(value)
        return index

    def has_lead(self, lead: EcgLead) -> bool:
        return lead in self.leads

    def signal(self, lead: EcgLead) -> EcgSignal:
        """Signal of ``lead``; raises KeyError if it was not recorded."""
        if lead not in self.leads:
            raise KeyError(f"Lead {lead.value} not present in {self}")
        return self.signals[self.leads.index(lead)]

    def best_matching_signal(self, preferred: EcgLead = EcgLead.II) -> EcgSignal:
        """
        Signal of ``preferred`` or of the most similar recorded lead.

        Falls back along ``LEAD_SIMILARITY`` and finally to the first channel.
        """
        if preferred in self.leads:
            return self.signal(preferred)

        for candidate in LEAD_SIMILARITY.get(preferred, []):
            if candidate in self.leads:
                logger.warning(f"Lead {preferred.value} not recorded, using {candidate.value}")
                return self.signal(candidate)

        logger.warning(f"Lead {preferred.value} not recorded, using first channel "
                       f"({self.leads[0].value})")
        return self.signals[0]

    def __len__(self) -> int:
        return len(self.signals[0])

    def __repr__(self) -> str:
        leads = ", ".join(lead.value for lead in self.leads)
        return f"Ecg(fs={self.sampling_rate:g}, leads=[{leads}], n_samples={len(self)})"
