"""
BeatChain Core Module

Sample storage and the beat data model shared by all detectors.
"""

from beatchain.core.ring_buffer import (
    RingBuffer,
    MinMax,
    StaleIndexError,
)

from beatchain.core.signal import (
    EcgLead,
    EcgSignal,
    Ecg,
    LEAD_SIMILARITY,
)

from beatchain.core.beats import (
    WaveMorphology,
    DescriptiveStatistics,
    QrsComplex,
    Heartbeat,
)

__all__ = [
    # Ring buffer
    "RingBuffer",
    "MinMax",
    "StaleIndexError",
    # Signals
    "EcgLead",
    "EcgSignal",
    "Ecg",
    "LEAD_SIMILARITY",
    # Beats
    "WaveMorphology",
    "DescriptiveStatistics",
    "QrsComplex",
    "Heartbeat",
]
