"""
BeatChain: RR Interval Outlier Correction

This module detects and repairs detector errors in an assembled RR-interval
series:
- Missed beats (an interval about twice the reference) get the missing
  interval inserted
- Ectopic beats (a short interval followed by a compensating long one) get
  both timestamps realigned
- Intervals with no plausible explanation are deleted, and every deletion is
  reported

The reference of each accepted interval is the median of the most recent
accepted intervals. Repaired values are finally re-estimated by cubic spline
interpolation through the surrounding valid intervals.

Author: BeatChain Project
Version: 1.0.0
Issued on: October 2026

References:
    Task Force of ESC and NASPE (1996). Heart rate variability: standards of
    measurement, physiological interpretation and clinical use.
"""

import bisect                                # Locate valid neighbours of a repaired interval
import logging                               # Deletions are reported, never silent
from collections import deque                # Sliding window of accepted reference values
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.interpolate import CubicSpline    # Value repair through neighbouring intervals

from beatchain.hrv.rr_intervals import RRInterval, RRIntervalList


logger = logging.getLogger(__name__)


class RepairKind(Enum):
    """How a flagged interval was explained and repaired."""
    MISSED_BEAT = "missed_beat"    # Interval inserted
    ECTOPIC = "ectopic"            # Two intervals realigned
    ARTIFACT = "artifact"          # Deleted, no plausible explanation
    IMPLAUSIBLE = "implausible"    # First interval outside the physiological range
    WARM_UP = "warm_up"            # Flagged before the reference was established
    ZERO = "zero"                  # Zero-length interval


@dataclass
class CorrectionConfig:
    """Configuration for RR interval correction. Values are empirical."""

    reference_length: int = 6         # Accepted intervals in the running median
    percent: float = 0.15             # Legacy single threshold, kept for review
    percent_high: float = 0.2         # Long intervals: both deviations must exceed this
    percent_low: float = 0.1          # Short intervals: reference deviation alone
    long_interval_ms: float = 500.0

    # Plausible range of the first interval (ms)
    min_first_ms: float = 300.0
    max_first_ms: float = 1200.0

    # Ratios to the reference that explain a flagged interval
    missed_ratio: Tuple[float, float] = (1.8, 2.2)
    ectopic_ratio: Tuple[float, float] = (0.675, 0.825)

    # Re-estimate repaired values by spline interpolation
    interpolate: bool = True
    interpolation_neighbours: int = 2

    def __post_init__(self):
        if self.reference_length < 1:
            raise ValueError(f"reference_length must be >= 1, got {self.reference_length}")
        if not 0 < self.percent_low <= self.percent_high:
            raise ValueError("Thresholds must satisfy 0 < percent_low <= percent_high")
        if not 0 < self.min_first_ms < self.max_first_ms:
            raise ValueError("First-interval range must satisfy 0 < min < max")
        for name in ('missed_ratio', 'ectopic_ratio'):
            low, high = getattr(self, name)
            if not 0 < low < high:
                raise ValueError(f"{name} must be an increasing positive pair")
        if self.interpolation_neighbours < 1:
            raise ValueError("interpolation_neighbours must be >= 1")

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class OutlierEvent:
    """One flagged interval and what was done about it."""
    index: int
    value: float
    timestamp: float
    reference: float
    kind: RepairKind

    def to_dict(self) -> Dict:
        result = asdict(self)
        result['kind'] = self.kind.value
        return result


@dataclass
class CorrectionReport:
    """
    Outcome of one correction pass.

    Attributes
    ----------
    n_input, n_output : int
        Number of intervals before and after correction.
    events : List[OutlierEvent]
        Intervals flagged once the reference was established.
    dropped : List[OutlierEvent]
        Intervals deleted while establishing the reference (zero-length,
        implausible first interval, warm-up outliers).
    n_inserted : int
        Intervals synthesized for missed beats.
    n_interpolated, n_interpolation_skipped : int
        Repaired values re-estimated by spline, or left unchanged for lack
        of valid neighbours.
    """
    n_input: int
    n_output: int = 0
    events: List[OutlierEvent] = field(default_factory=list)
    dropped: List[OutlierEvent] = field(default_factory=list)
    n_inserted: int = 0
    n_interpolated: int = 0
    n_interpolation_skipped: int = 0

    @property
    def n_outliers(self) -> int:
        return len(self.events)

    @property
    def n_deleted(self) -> int:
        """Intervals removed from the series, for any reason."""
        artifacts = sum(1 for event in self.events if event.kind is RepairKind.ARTIFACT)
        return artifacts + len(self.dropped)

    @property
    def deleted_values(self) -> List[float]:
        return [e.value for e in self.dropped] + [
            e.value for e in self.events if e.kind is RepairKind.ARTIFACT
        ]

    @property
    def outlier_ratio(self) -> float:
        """Fraction of input intervals that were flagged or dropped."""
        if self.n_input == 0:
            return 0.0
        return (len(self.events) + len(self.dropped)) / self.n_input

    @property
    def n_changes(self) -> int:
        """Structural edits plus flagged intervals; 0 for an already clean series."""
        return len(self.events) + len(self.dropped) + self.n_inserted

    def count(self, kind: RepairKind) -> int:
        return sum(1 for event in self.events + self.dropped if event.kind is kind)

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            'n_input': self.n_input,
            'n_output': self.n_output,
            'n_outliers': self.n_outliers,
            'n_deleted': self.n_deleted,
            'n_inserted': self.n_inserted,
            'n_interpolated': self.n_interpolated,
            'n_interpolation_skipped': self.n_interpolation_skipped,
            'outlier_ratio': self.outlier_ratio,
            'events': [event.to_dict() for event in self.events],
            'dropped': [event.to_dict() for event in self.dropped],
        }


class RrIntervalCorrector:
    """
    Offline outlier detection and repair for an RR interval series.

    The series is edited in place. After a deletion the same position is
    evaluated again, since a different interval now occupies it. Intervals
    already flagged as outliers are skipped, so running the corrector on its
    own output changes nothing.

    Parameters
    ----------
    config : CorrectionConfig, optional
        Thresholds and options. Uses defaults if not provided.

    Example
    -------
    >>> rr = RRIntervalList.from_heartbeats(beats)
    >>> report = RrIntervalCorrector()(rr)
    >>> print(f"{report.n_inserted} inserted, {report.n_deleted} deleted")

    Notes
    -----
    Classification ("percent filter"), with ``ref`` the previous interval's
    reference:

    - Intervals above ``long_interval_ms`` are flagged only if they deviate
      by more than ``percent_high`` from both ``ref`` and the previous value
    - Shorter intervals are flagged if they deviate by more than
      ``percent_low`` from ``ref``
    """

    def __init__(self, config: Optional[CorrectionConfig] = None):
        self.config = config or CorrectionConfig()

    def __call__(self, intervals: RRIntervalList) -> CorrectionReport:
        return self.correct(intervals)

    def correct(self, intervals: RRIntervalList) -> CorrectionReport:
        """
        Detect and repair outliers in place.

        Parameters
        ----------
        intervals : RRIntervalList
            Series to correct, with values in samples.

        Returns
        -------
        CorrectionReport
            Everything that was flagged, inserted, deleted or interpolated.
        """
        report = CorrectionReport(n_input=len(intervals))
        references: Deque[float] = deque(maxlen=self.config.reference_length)
        repaired: List[RRInterval] = []

        index = 0
        while index < len(intervals):
            index = self._evaluate(intervals, index, references, repaired, report)

        if self.config.interpolate and repaired:
            self._interpolate(intervals, repaired, report)

        report.n_output = len(intervals)
        if report.n_changes:
            logger.info(f"RR correction: {report.n_input} -> {report.n_output} intervals, "
                        f"{report.n_outliers} outliers, {report.n_inserted} inserted, "
                        f"{report.n_deleted} deleted")
        return report

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _evaluate(self, intervals: RRIntervalList, index: int, references: Deque[float],
                  repaired: List[RRInterval], report: CorrectionReport) -> int:
        """Evaluate ``intervals[index]`` and return the next index to evaluate."""
        cfg = self.config
        rr = intervals[index]

        if rr.value == 0:
            self._drop(intervals, index, RepairKind.ZERO, report)
            return index

        if rr.outlier:
            return index + 1

        if index == 0:
            value_ms = rr.value_ms(intervals.sampling_rate)
            if cfg.min_first_ms < value_ms < cfg.max_first_ms:
                self._accept(rr, references)
                return 1
            self._drop(intervals, index, RepairKind.IMPLAUSIBLE, report)
            return index

        flagged = self.is_outlier(rr, intervals.sampling_rate)
        if not flagged:
            self._accept(rr, references)
            return index + 1

        if index < cfg.reference_length:
            self._drop(intervals, index, RepairKind.WARM_UP, report)
            return index

        return self._repair(intervals, index, repaired, report)

    def is_outlier(self, rr: RRInterval, sampling_rate: float) -> bool:
        """Percent filter against the previous reference and value."""
        previous = rr.previous
        reference = previous.reference if previous is not None else rr.value
        if reference <= 0:
            reference = rr.value

        ref_diff = abs(rr.value - reference) / reference
        if previous is not None and not previous.outlier and previous.value > 0:
            prev_diff = abs(rr.value - previous.value) / previous.value
        else:
            prev_diff = ref_diff

        if rr.value_ms(sampling_rate) > self.config.long_interval_ms:
            return ref_diff > self.config.percent_high and prev_diff > self.config.percent_high
        return ref_diff > self.config.percent_low

    @staticmethod
    def _accept(rr: RRInterval, references: Deque[float]) -> None:
        references.append(rr.value)
        rr.reference = float(np.median(references))
        rr.outlier = False

    def _drop(self, intervals: RRIntervalList, index: int, kind: RepairKind,
              report: CorrectionReport) -> None:
        rr = intervals[index]
        report.dropped.append(OutlierEvent(index, rr.value, rr.timestamp, rr.reference, kind))
        logger.info(f"Dropped RR interval {index} ({rr.value:g} samples): {kind.value}")
        del intervals[index]

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def _repair(self, intervals: RRIntervalList, index: int,
                repaired: List[RRInterval], report: CorrectionReport) -> int:
        cfg = self.config
        rr = intervals[index]
        previous = rr.previous
        reference = previous.reference

        rr.reference = reference
        rr.outlier = True
        event = OutlierEvent(index, rr.value, rr.timestamp, reference, RepairKind.ARTIFACT)
        report.events.append(event)

        ratio = rr.value / reference
        following = rr.next

        if cfg.missed_ratio[0] <= ratio <= cfg.missed_ratio[1]:
            event.kind = RepairKind.MISSED_BEAT
            inserted = RRInterval(
                value=reference,
                timestamp=previous.timestamp + reference,
                reference=reference,
                outlier=True,
                r_peak1=rr.r_peak1,
                r_peak2=rr.r_peak1 + int(round(reference)),
                inserted=True,
            )
            rr.value -= reference
            rr.timestamp = previous.timestamp + 2 * reference
            rr.r_peak1 = inserted.r_peak2
            intervals.insert(index, inserted)
            repaired.extend([inserted, rr])
            report.n_inserted += 1
            logger.debug(f"Missed beat at RR {index}: inserted interval of {reference:g} samples")
            return index + 2

        if (following is not None
                and cfg.ectopic_ratio[0] <= ratio <= cfg.ectopic_ratio[1]
                and cfg.missed_ratio[0] <= (rr.value + following.value) / reference <= cfg.missed_ratio[1]):
            event.kind = RepairKind.ECTOPIC
            rr.timestamp = previous.timestamp + reference
            following.timestamp = previous.timestamp + 2 * reference
            following.reference = reference
            following.outlier = True
            repaired.extend([rr, following])
            logger.debug(f"Ectopic beat at RR {index}: realigned intervals {index} and {index + 1}")
            return index + 2

        logger.info(f"Deleted RR interval {index} ({rr.value:g} samples, ratio {ratio:.2f} "
                    f"to reference): no plausible explanation")
        del intervals[index]
        return index

    def _interpolate(self, intervals: RRIntervalList, repaired: List[RRInterval],
                     report: CorrectionReport) -> None:
        """Replace repaired values by a natural cubic spline through valid neighbours."""
        n_neighbours = self.config.interpolation_neighbours
        positions = {id(rr): i for i, rr in enumerate(intervals)}
        valid = [i for i, rr in enumerate(intervals) if not rr.outlier]
        timestamps = intervals.timestamps()
        values = intervals.values()

        for rr in repaired:
            index = positions.get(id(rr))
            if index is None:
                continue

            split = bisect.bisect_left(valid, index)
            support = valid[max(split - n_neighbours, 0):split] + valid[split:split + n_neighbours]
            if len(support) < 2 * n_neighbours or np.any(np.diff(timestamps[support]) <= 0):
                report.n_interpolation_skipped += 1
                logger.debug(f"Not enough valid neighbours to interpolate RR {index}")
                continue

            spline = CubicSpline(timestamps[support], values[support], bc_type='natural')
            rr.value = float(spline(rr.timestamp))
            rr.interpolated = True
            report.n_interpolated += 1

    def __repr__(self) -> str:
        return f"RrIntervalCorrector(reference_length={self.config.reference_length})"


def correct_rr_intervals(
    rr: Union[RRIntervalList, Sequence[float]],
    sampling_rate: float,
    config: Optional[CorrectionConfig] = None
) -> Tuple[RRIntervalList, CorrectionReport]:
    """
    Convenience function to correct an RR interval series.

    Parameters
    ----------
    rr : RRIntervalList or sequence of float
        Intervals, or their values in samples.
    sampling_rate : float
        Sampling frequency in Hz.
    config : CorrectionConfig, optional
        Correction configuration.

    Returns
    -------
    Tuple[RRIntervalList, CorrectionReport]
        Corrected series and the correction report.
    """
    if not isinstance(rr, RRIntervalList):
        rr = RRIntervalList.from_values(rr, sampling_rate)
    report = RrIntervalCorrector(config).correct(rr)
    return rr, report
