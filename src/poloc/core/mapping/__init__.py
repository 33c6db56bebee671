from poloc.core.mapping.delay_mapper import (
    CalibrationSample,
    DistanceEstimate,
    MonotoneEnvelope,
    DelayMapper,
    trim_by_ratio,
)

__all__ = [
    "CalibrationSample",
    "DistanceEstimate",
    "MonotoneEnvelope",
    "DelayMapper",
    "trim_by_ratio",
]
