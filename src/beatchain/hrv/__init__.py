"""This module provides the RR interval series and its outlier correction."""

from beatchain.hrv.rr_intervals import (
    RRInterval,
    RRIntervalList,
)

from beatchain.hrv.correction import (
    RrIntervalCorrector,
    CorrectionConfig,
    CorrectionReport,
    OutlierEvent,
    RepairKind,
    correct_rr_intervals,
)

__all__ = [
    "RRInterval",
    "RRIntervalList",
    "RrIntervalCorrector",
    "CorrectionConfig",
    "CorrectionReport",
    "OutlierEvent",
    "RepairKind",
    "correct_rr_intervals",
]
