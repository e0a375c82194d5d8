"""
BeatChain

Streaming ECG beat detection: QRS detection, R-peak refinement, heartbeat
chain assembly and RR interval correction.
"""

__version__ = "1.0.0"

from beatchain.core import (
    Ecg,
    EcgLead,
    EcgSignal,
    Heartbeat,
    QrsComplex,
    RingBuffer,
    StaleIndexError,
    WaveMorphology,
)

from beatchain.preprocessing import (
    DigitalFilter,
    FilterPipeline,
    InvalidFilterSpec,
)

from beatchain.detection import (
    ElgendiConfig,
    ElgendiQrsDetector,
    HeartbeatAssembler,
    PanTompkinsConfig,
    PanTompkinsDetector,
    QrsDetector,
    WaveSearch,
    find_heartbeats,
    find_qrs_complexes,
)

from beatchain.hrv import (
    CorrectionConfig,
    CorrectionReport,
    RRIntervalList,
    RrIntervalCorrector,
    correct_rr_intervals,
)

from beatchain.pipeline import (
    BeatAnalysisResult,
    BeatPipeline,
    PipelineConfig,
    create_pipeline,
    process_ecg,
)

__all__ = [
    "__version__",
    # Core
    "Ecg",
    "EcgLead",
    "EcgSignal",
    "Heartbeat",
    "QrsComplex",
    "RingBuffer",
    "StaleIndexError",
    "WaveMorphology",
    # Filters
    "DigitalFilter",
    "FilterPipeline",
    "InvalidFilterSpec",
    # Detection
    "ElgendiConfig",
    "ElgendiQrsDetector",
    "HeartbeatAssembler",
    "PanTompkinsConfig",
    "PanTompkinsDetector",
    "QrsDetector",
    "WaveSearch",
    "find_heartbeats",
    "find_qrs_complexes",
    # HRV
    "CorrectionConfig",
    "CorrectionReport",
    "RRIntervalList",
    "RrIntervalCorrector",
    "correct_rr_intervals",
    # Pipeline
    "BeatAnalysisResult",
    "BeatPipeline",
    "PipelineConfig",
    "create_pipeline",
    "process_ecg",
]
