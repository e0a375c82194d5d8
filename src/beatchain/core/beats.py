"""
BeatChain: Beat Data Model

This module defines the records produced by the detection chain:
- WaveMorphology: onset/peak/offset of a P or T wave
- DescriptiveStatistics: summary statistics of a QRS window
- QrsComplex: Q/R/S positions, sample window and morphology features
- Heartbeat: a QRS complex plus its P and T waves

Neighbouring QRS complexes and heartbeats are linked through weak references,
so a long-running stream only keeps alive what its owning buffers hold.

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026
"""

import logging                                # Tracking of feature extraction problems
import weakref                                # Non-owning prev/next links between beats
from dataclasses import asdict, dataclass     # Structured containers for results
from typing import Dict, Optional             # Type hinting for better code documentation

import numpy as np                            # Window arithmetic
from scipy import stats                       # Skewness and kurtosis of the QRS window

from beatchain.core.ring_buffer import StaleIndexError
from beatchain.core.signal import EcgSignal


logger = logging.getLogger(__name__)

# Q and S are searched within this distance of R
QS_SEARCH_SEC = 0.1
# Maximum extent of the deflection walk on either side of R
QRS_WIDTH_MAX_SEC = 0.15


@dataclass
class WaveMorphology:
    """
    Fiducial points of a P or T wave.

    Positions are absolute sample indices (-1 when unknown), values are
    amplitudes (NaN when unknown).
    """
    onset_position: int = -1
    onset_value: float = float('nan')
    peak_position: int = -1
    peak_value: float = float('nan')
    offset_position: int = -1
    offset_value: float = float('nan')

    @property
    def width(self) -> int:
        """Onset-to-offset width in samples (0 if either end is unknown)."""
        if self.onset_position < 0 or self.offset_position < 0:
            return 0
        return self.offset_position - self.onset_position

    @property
    def is_complete(self) -> bool:
        return min(self.onset_position, self.peak_position, self.offset_position) >= 0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class DescriptiveStatistics:
    """Summary statistics of the samples in a QRS window."""
    minimum: float
    maximum: float
    mean: float
    variance: float
    std: float
    skewness: float
    kurtosis: float
    energy: float

    @classmethod
    def from_samples(cls, samples: np.ndarray) -> 'DescriptiveStatistics':
        samples = np.asarray(samples, dtype=float)
        if len(samples) == 0:
            nan = float('nan')
            return cls(nan, nan, nan, nan, nan, nan, nan, 0.0)

        variance = float(np.var(samples, ddof=1)) if len(samples) > 1 else 0.0
        if len(samples) > 3 and variance > 0:
            skewness = float(stats.skew(samples, bias=False))
            kurtosis = float(stats.kurtosis(samples, fisher=True, bias=False))
        else:
            skewness = kurtosis = float('nan')

        return cls(
            minimum=float(np.min(samples)),
            maximum=float(np.max(samples)),
            mean=float(np.mean(samples)),
            variance=variance,
            std=float(np.sqrt(variance)),
            skewness=skewness,
            kurtosis=kurtosis,
            energy=float(np.sum(samples ** 2)),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


def _deref(ref):
    return ref() if ref is not None else None


class QrsComplex:
    """
    A detected QRS complex.

    The complex starts "open": only its provisional R position is known and
    refinement may still move it. ``finalize`` then captures the sample
    window around R, locates Q and S, and computes the morphology features.
    This happens exactly once.

    Parameters
    ----------
    signal : EcgSignal or None
        Sample source the complex was detected in. None for detached
        templates.
    r_position : int
        Sample index of the R-peak.
    samples_before, samples_after : int
        Extent of the sample window around R.

    Example
    -------
    >>> qrs = QrsComplex(signal, r_position=512, samples_before=30, samples_after=70)
    >>> qrs.finalize()
    >>> qrs.qrs_width_sec, qrs.statistics.energy
    """

    def __init__(self, signal: Optional[EcgSignal], r_position: int,
                 samples_before: int = 0, samples_after: int = 0,
                 sampling_rate: Optional[float] = None):
        self.signal = signal
        self.sampling_rate = float(sampling_rate or signal.sampling_rate)
        self.r_position = int(r_position)
        self.samples_before = int(samples_before)
        self.samples_after = int(samples_after)

        self.start = self.r_position - self.samples_before
        self.end = self.r_position + self.samples_after
        self.samples: Optional[np.ndarray] = None

        self.q_position = -1
        self.s_position = -1
        self.onset = -1
        self.offset = -1
        self.baseline = float('nan')
        self.statistics: Optional[DescriptiveStatistics] = None
        self.qrst_area = float('nan')
        self.template_correlation = float('nan')
        self.is_finalized = False

        self._previous = None
        self._next = None
        self._heartbeat: Optional['Heartbeat'] = None

    # ------------------------------------------------------------------
    # Sample access
    # ------------------------------------------------------------------

    def value_at(self, index: int) -> float:
        """Amplitude at an absolute sample index."""
        if self.samples is not None and self.start <= index <= self.end:
            return float(self.samples[index - self.start])
        if self.signal is None:
            raise StaleIndexError(index, self.start, self.end + 1)
        return self.signal.get(index)

    @property
    def r_value(self) -> float:
        return self.value_at(self.r_position)

    @property
    def q_value(self) -> float:
        return self.value_at(self.q_position) if self.q_position >= 0 else float('nan')

    @property
    def s_value(self) -> float:
        return self.value_at(self.s_position) if self.s_position >= 0 else float('nan')

    def set_r_peak(self, position: int) -> None:
        """Move the R-peak (refinement) and re-centre the window."""
        if self.is_finalized:
            raise RuntimeError("Cannot move the R-peak of a finalized QRS complex")
        self.r_position = int(position)
        self.start = self.r_position - self.samples_before
        self.end = self.r_position + self.samples_after

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    @property
    def previous(self) -> Optional['QrsComplex']:
        return _deref(self._previous)

    @previous.setter
    def previous(self, qrs: Optional['QrsComplex']) -> None:
        self._previous = weakref.ref(qrs) if qrs is not None else None

    @property
    def next(self) -> Optional['QrsComplex']:
        return _deref(self._next)

    @next.setter
    def next(self, qrs: Optional['QrsComplex']) -> None:
        self._next = weakref.ref(qrs) if qrs is not None else None

    def link_previous(self, qrs: Optional['QrsComplex']) -> None:
        """Set the previous complex and point its ``next`` back at this one."""
        self.previous = qrs
        if qrs is not None:
            qrs.next = self

    @property
    def heartbeat(self) -> 'Heartbeat':
        """Heartbeat wrapping this complex, created on first access."""
        if self._heartbeat is None:
            self._heartbeat = Heartbeat(self)
        return self._heartbeat

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self) -> None:
        """
        Capture the sample window and compute all morphology features.

        The left edge of the window is clipped to the oldest available sample;
        the right edge must be available.
        """
        if self.is_finalized:
            raise RuntimeError(f"{self} is already finalized")

        self.start = max(self.start, self.signal.first_index, 0)
        self.samples = self.signal.subrange(self.start, self.end + 1)

        self._find_q_peak()
        self._find_s_peak()
        self._find_deflections()
        self.statistics = DescriptiveStatistics.from_samples(self.samples)
        self.qrst_area = float(np.sum(np.abs(self.samples - self.statistics.mean)))
        self.is_finalized = True

    def _find_q_peak(self) -> None:
        # largest deviation from R within the search distance to the left
        first = max(self.r_position - int(self.sampling_rate * QS_SEARCH_SEC), self.start)
        segment = self.samples[first - self.start:self.r_position - self.start + 1]
        deviation = np.abs(segment - self.r_value)
        # ties resolve to the sample closest to R
        self.q_position = self.r_position - int(np.argmax(deviation[::-1]))

    def _find_s_peak(self) -> None:
        last = min(self.r_position + int(self.sampling_rate * QS_SEARCH_SEC), self.end)
        segment = self.samples[self.r_position - self.start:last - self.start + 1]
        deviation = np.abs(segment - self.r_value)
        self.s_position = self.r_position + int(np.argmax(deviation))

    def _find_deflections(self) -> None:
        """Walk outwards from Q and S while the signal keeps rising."""
        max_extent = int(self.sampling_rate * QRS_WIDTH_MAX_SEC)

        onset = self.start
        limit = max(self.start, self.q_position - (max_extent - (self.r_position - self.q_position)))
        for index in range(self.q_position - 1, limit - 1, -1):
            if self.value_at(index) < self.value_at(index + 1):
                onset = index + 1
                break
        else:
            onset = limit

        offset = self.end
        limit = min(self.end, self.s_position + (max_extent - (self.s_position - self.r_position)))
        for index in range(self.s_position + 1, limit + 1):
            if self.value_at(index) < self.value_at(index - 1):
                offset = index - 1
                break
        else:
            offset = limit

        self.onset = onset
        self.offset = offset
        self.baseline = 0.5 * (self.value_at(onset) + self.value_at(offset))

    # ------------------------------------------------------------------
    # Derived features
    # ------------------------------------------------------------------

    @property
    def qrs_width(self) -> int:
        """Onset-to-offset width in samples."""
        return self.offset - self.onset if self.onset >= 0 else 0

    @property
    def qrs_width_sec(self) -> float:
        return self.qrs_width / self.sampling_rate

    @property
    def qr_amplitude(self) -> float:
        return self.r_value - self.q_value

    @property
    def rs_amplitude(self) -> float:
        return self.r_value - self.s_value

    def rr_distance(self) -> int:
        """Samples since the previous R-peak (0 without a predecessor)."""
        previous = self.previous
        return self.r_position - previous.r_position if previous is not None else 0

    def rr_interval(self) -> float:
        """Seconds since the previous R-peak (NaN without a predecessor)."""
        previous = self.previous
        if previous is None:
            return float('nan')
        return self.rr_distance() / self.sampling_rate

    def to_template(self) -> 'QrsComplex':
        """
        Detached copy that owns its samples.

        Templates stay valid after the live buffer overwrote the original
        window, which makes them suitable for beat-to-beat comparisons.
        """
        if not self.is_finalized:
            raise RuntimeError("Only finalized QRS complexes can become templates")
        template = QrsComplex(None, self.r_position, self.samples_before,
                              self.samples_after, sampling_rate=self.sampling_rate)
        template.start = self.start
        template.end = self.end
        template.samples = self.samples.copy()
        for name in ('q_position', 's_position', 'onset', 'offset', 'baseline',
                     'statistics', 'qrst_area'):
            setattr(template, name, getattr(self, name))
        template.is_finalized = True
        return template

    def _aligned_windows(self, other: 'QrsComplex'):
        """Overlapping samples of both windows, aligned on their R-peaks."""
        left = min(self.r_position - self.start, other.r_position - other.start)
        right = min(self.end - self.r_position, other.end - other.r_position)
        mine = self.samples[self.r_position - self.start - left:self.r_position - self.start + right + 1]
        theirs = other.samples[other.r_position - other.start - left:other.r_position - other.start + right + 1]
        return mine, theirs

    def cross_correlation(self, template: Optional['QrsComplex']) -> float:
        """
        Normalized cross-correlation with ``template`` at zero lag.

        Returns NaN when there is no template or either window is flat.
        """
        if template is None or self.samples is None or template.samples is None:
            return float('nan')
        mine, theirs = self._aligned_windows(template)
        mine = mine - mine.mean()
        theirs = theirs - theirs.mean()
        denominator = np.sqrt(np.sum(mine ** 2) * np.sum(theirs ** 2))
        if denominator == 0:
            return float('nan')
        return float(np.sum(mine * theirs) / denominator)

    def area_difference(self, template: Optional['QrsComplex']) -> float:
        """Relative difference of the QRST areas (NaN without a template)."""
        if template is None or not template.qrst_area:
            return float('nan')
        return abs(self.qrst_area - template.qrst_area) / template.qrst_area

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        result = {
            'r_position': self.r_position,
            'r_value': self.r_value,
            'q_position': self.q_position,
            's_position': self.s_position,
            'onset': self.onset,
            'offset': self.offset,
            'qrs_width_sec': self.qrs_width_sec,
            'baseline': self.baseline,
            'qrst_area': self.qrst_area,
            'template_correlation': self.template_correlation,
        }
        if self.statistics is not None:
            result.update(self.statistics.to_dict())
        return result

    def __repr__(self) -> str:
        state = "finalized" if self.is_finalized else "open"
        return f"QrsComplex(r={self.r_position}, {state})"


class Heartbeat:
    """
    One heartbeat: a QRS complex with its optional P and T waves.

    A heartbeat is finalized once the following beat was detected; only then
    are its ``next`` link and its wave morphologies known.
    """

    def __init__(self, qrs: QrsComplex):
        self.qrs = qrs
        self.p_wave: Optional[WaveMorphology] = None
        self.t_wave: Optional[WaveMorphology] = None
        self.is_finalized = False
        self._previous = None
        self._next = None

    @property
    def previous(self) -> Optional['Heartbeat']:
        return _deref(self._previous)

    @previous.setter
    def previous(self, beat: Optional['Heartbeat']) -> None:
        self._previous = weakref.ref(beat) if beat is not None else None

    @property
    def next(self) -> Optional['Heartbeat']:
        return _deref(self._next)

    @next.setter
    def next(self, beat: Optional['Heartbeat']) -> None:
        self._next = weakref.ref(beat) if beat is not None else None

    @property
    def r_position(self) -> int:
        return self.qrs.r_position

    @property
    def sampling_rate(self) -> float:
        return self.qrs.sampling_rate

    @property
    def rr_interval_sec(self) -> float:
        """Seconds since the previous beat's R-peak (NaN for the first beat)."""
        previous = self.previous
        if previous is None:
            return float('nan')
        return (self.r_position - previous.r_position) / self.sampling_rate

    @property
    def heart_rate_bpm(self) -> float:
        """Instantaneous heart rate from the preceding RR interval."""
        rr = self.rr_interval_sec
        return 60.0 / rr if rr > 0 else float('nan')

    @property
    def pq_time_sec(self) -> float:
        """P onset to QRS onset in seconds (NaN without a P wave)."""
        if self.p_wave is None or self.p_wave.onset_position < 0 or self.qrs.onset < 0:
            return float('nan')
        return (self.qrs.onset - self.p_wave.onset_position) / self.sampling_rate

    def to_dict(self) -> Dict:
        result = self.qrs.to_dict()
        result.update({
            'rr_interval_sec': self.rr_interval_sec,
            'heart_rate_bpm': self.heart_rate_bpm,
            'pq_time_sec': self.pq_time_sec,
            'p_peak_position': self.p_wave.peak_position if self.p_wave else -1,
            't_peak_position': self.t_wave.peak_position if self.t_wave else -1,
        })
        return result

    def __repr__(self) -> str:
        return f"Heartbeat(r={self.r_position}, finalized={self.is_finalized})"
