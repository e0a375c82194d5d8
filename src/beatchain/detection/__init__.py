"""This module provides QRS detection and heartbeat assembly:
- Knowledge-based (two moving averages) detector
- Pan-Tompkins detector
- R-peak refinement post-processors
- Heartbeat chain assembly with P/T wave search hooks
"""

from beatchain.detection.base import (
    QrsDetector,
    QrsComplexCollector,
)

from beatchain.detection.refinement import (
    RPeakRefinement,
    MaxSearchRefinement,
    SlacknessReduction,
    default_refinement,
    refine_r_peaks,
)

from beatchain.detection.elgendi import (
    ElgendiQrsDetector,
    ElgendiConfig,
    DetectorState,
    find_qrs_complexes,
)

from beatchain.detection.pan_tompkins import (
    PanTompkinsDetector,
    PanTompkinsConfig,
    detect_r_peaks,
)

from beatchain.detection.heartbeat import (
    HeartbeatAssembler,
    WaveSearch,
    find_heartbeats,
)

__all__ = [
    # Base
    "QrsDetector",
    "QrsComplexCollector",
    # Refinement
    "RPeakRefinement",
    "MaxSearchRefinement",
    "SlacknessReduction",
    "default_refinement",
    "refine_r_peaks",
    # Knowledge-based detector
    "ElgendiQrsDetector",
    "ElgendiConfig",
    "DetectorState",
    "find_qrs_complexes",
    # Pan-Tompkins
    "PanTompkinsDetector",
    "PanTompkinsConfig",
    "detect_r_peaks",
    # Heartbeats
    "HeartbeatAssembler",
    "WaveSearch",
    "find_heartbeats",
]
