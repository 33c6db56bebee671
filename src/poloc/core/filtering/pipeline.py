"""
Ordered filter pipeline.

Stages run in the configured order over the current survivor set:

    "ratio"          global distance/delay ratio trim
    "binned_ratio"   per-distance-bin ratio trim
    "beta_cut"       keep the best fraction by quality score
    "decomposition"  robust PCA Byzantine detection

Prefilter removals are reported as outliers (excluded from R* only);
decomposition removals are reported as Byzantine (excluded from R* and from
rewards, and slash-eligible). A decomposition that cannot run for lack of
data is recorded as skipped and flags nobody.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from poloc.core.errors import InsufficientData, ValidationError
from poloc.core.filtering.byzantine import ByzantineDetector, ByzantineReport
from poloc.core.filtering.prefilters import (
    FilterCandidate,
    ratio_filter,
    binned_ratio_filter,
    beta_cut,
)
from poloc.core.filtering.robust_pca import RobustPCA
from poloc.core.protocol.constants import (
    DEFAULT_PIPELINE,
    PIPELINE_STAGES,
    RATIO_FILTER_BETA,
    RATIO_FILTER_BINS,
    BETA_CUT_FRACTION,
    QUORUM,
)

logger = logging.getLogger(__name__)


@dataclass
class StageStats:
    stage: str
    input_count: int
    output_count: int
    removed: List[str] = field(default_factory=list)
    skipped: bool = False
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "input": self.input_count,
            "output": self.output_count,
            "removed": list(self.removed),
            "skipped": self.skipped,
            "note": self.note,
        }


@dataclass
class PipelineResult:
    kept: List[FilterCandidate]
    outliers: List[str] = field(default_factory=list)
    byzantine: List[str] = field(default_factory=list)
    stages: List[StageStats] = field(default_factory=list)
    report: Optional[ByzantineReport] = None

    @property
    def kept_ids(self) -> List[str]:
        return [c.participant_id for c in self.kept]

    def to_dict(self) -> dict:
        return {
            "kept": self.kept_ids,
            "outliers": list(self.outliers),
            "byzantine": list(self.byzantine),
            "stages": [s.to_dict() for s in self.stages],
            "decomposition": self.report.to_dict() if self.report else None,
        }


class FilterPipeline:
    def __init__(
        self,
        stages: Sequence[str] = DEFAULT_PIPELINE,
        detector: Optional[ByzantineDetector] = None,
        ratio_beta: float = RATIO_FILTER_BETA,
        bins: int = RATIO_FILTER_BINS,
        beta_cut_fraction: float = BETA_CUT_FRACTION,
        min_keep: int = QUORUM,
    ):
        unknown = [s for s in stages if s not in PIPELINE_STAGES]
        if unknown:
            raise ValidationError(f"Unknown pipeline stages: {unknown}")
        self.stages = tuple(stages)
        self.detector = detector or ByzantineDetector()
        self.ratio_beta = ratio_beta
        self.bins = bins
        self.beta_cut_fraction = beta_cut_fraction
        self.min_keep = min_keep

    @classmethod
    def from_config(cls, config) -> "FilterPipeline":
        solver = RobustPCA(
            tolerance=config.rpca_tolerance,
            max_iterations=config.rpca_max_iterations,
            rho=config.rpca_rho,
            lambda_scale=config.rpca_lambda_scale,
            exact_max_dim=config.exact_svd_max_dim,
        )
        return cls(
            stages=config.pipeline,
            detector=ByzantineDetector(solver, threshold=config.byzantine_threshold),
            ratio_beta=config.ratio_filter_beta,
            bins=config.ratio_filter_bins,
            beta_cut_fraction=config.beta_cut_fraction,
            min_keep=config.quorum,
        )

    def run(self, candidates: Sequence[FilterCandidate]) -> PipelineResult:
        current = list(candidates)
        result = PipelineResult(kept=current)

        for stage in self.stages:
            before = current
            stats = StageStats(stage, len(before), len(before))

            if stage == "decomposition":
                try:
                    report = self.detector.detect({c.participant_id: c.samples for c in before})
                except InsufficientData as e:
                    stats.skipped = True
                    stats.note = e.message
                    logger.info(f"Decomposition skipped: {e.message}")
                else:
                    result.report = report
                    flagged = set(report.byzantine)
                    current = [c for c in before if c.participant_id not in flagged]
                    result.byzantine.extend(c.participant_id for c in before if c.participant_id in flagged)
            elif stage == "ratio":
                current = ratio_filter(before, self.ratio_beta)
            elif stage == "binned_ratio":
                current = binned_ratio_filter(before, self.ratio_beta, self.bins)
            elif stage == "beta_cut":
                current = beta_cut(before, self.beta_cut_fraction, self.min_keep)

            survivors = {c.participant_id for c in current}
            stats.removed = [c.participant_id for c in before if c.participant_id not in survivors]
            stats.output_count = len(current)
            if stage != "decomposition":
                result.outliers.extend(stats.removed)
            result.stages.append(stats)

            if stats.removed:
                logger.debug(f"Stage {stage}: {stats.input_count} -> {stats.output_count}")

        result.kept = current
        return result
