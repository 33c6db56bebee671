"""
Robust Filter / Matrix-Completion Module

Separates plausible from corrupted measurement series and scores each
participant for Byzantine behavior.
"""

from poloc.core.filtering.decomposition import (
    SVDResult,
    SVDStrategy,
    ExactSVD,
    TruncatedPowerSVD,
    select_strategy,
)
from poloc.core.filtering.robust_pca import RobustPCA, RPCAResult, shrink
from poloc.core.filtering.byzantine import (
    DelayMatrix,
    ByzantineReport,
    ByzantineDetector,
    assemble_delay_matrix,
)
from poloc.core.filtering.prefilters import (
    FilterCandidate,
    ratio_filter,
    binned_ratio_filter,
    beta_cut,
)
from poloc.core.filtering.pipeline import FilterPipeline, PipelineResult, StageStats

__all__ = [
    "SVDResult",
    "SVDStrategy",
    "ExactSVD",
    "TruncatedPowerSVD",
    "select_strategy",
    "RobustPCA",
    "RPCAResult",
    "shrink",
    "DelayMatrix",
    "ByzantineReport",
    "ByzantineDetector",
    "assemble_delay_matrix",
    "FilterCandidate",
    "ratio_filter",
    "binned_ratio_filter",
    "beta_cut",
    "FilterPipeline",
    "PipelineResult",
    "StageStats",
]
