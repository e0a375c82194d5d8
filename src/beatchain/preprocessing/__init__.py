"""This module provides the streaming filter stages of the detectors:
- Digital filters evaluated one sample at a time
- Moving averages with constant-time updates
- Tabulated Butterworth bandpass designs
- Group-delay aligned filter pipelines
"""

from beatchain.preprocessing.filters import (
    DigitalFilter,
    MovingAverageFilter,
    FilterPipeline,
    BandpassDesign,
    InvalidFilterSpec,
    SUPPORTED_SAMPLING_RATES,
    bandpass_filter,
    bandpass_table,
    moving_average_pipeline,
    nearest_supported_rate,
)

__all__ = [
    "DigitalFilter",
    "MovingAverageFilter",
    "FilterPipeline",
    "BandpassDesign",
    "InvalidFilterSpec",
    "SUPPORTED_SAMPLING_RATES",
    "bandpass_filter",
    "bandpass_table",
    "moving_average_pipeline",
    "nearest_supported_rate",
]
