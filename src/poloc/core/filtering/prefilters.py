"""
Cheap outlier prefilters that run ahead of the matrix decomposition.

- ratio_filter: trim the most extreme distance/delay ratios globally
- binned_ratio_filter: the same trim inside equal-width distance bins, so
  near and far participants are judged against peers at similar range
- beta_cut: keep only the best fraction by quality score (lower is better)

All filters return the surviving candidates in their input order.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from poloc.core.protocol.constants import (
    RATIO_FILTER_BETA,
    RATIO_FILTER_BINS,
    BETA_CUT_FRACTION,
    QUORUM,
)

logger = logging.getLogger(__name__)


@dataclass
class FilterCandidate:
    """A participant as seen by the filter pipeline."""
    participant_id: str
    delay_ms: float
    distance_m: float
    quality_score: float = 0.0
    samples: Sequence[Optional[float]] = field(default_factory=list)

    @property
    def ratio(self) -> float:
        if self.delay_ms <= 0:
            return math.inf
        return self.distance_m / self.delay_ms


def _keep_in_order(candidates: Sequence[FilterCandidate], kept_ids) -> List[FilterCandidate]:
    return [c for c in candidates if c.participant_id in kept_ids]


def ratio_filter(candidates: Sequence[FilterCandidate], beta: float = RATIO_FILTER_BETA) -> List[FilterCandidate]:
    """Drop floor(beta * n) candidates with extreme ratio, half from each tail."""
    n = len(candidates)
    remove = int(math.floor(beta * n))
    if remove <= 0:
        return list(candidates)
    ordered = sorted(candidates, key=lambda c: c.ratio)
    low = remove // 2
    high = remove - low
    kept = {c.participant_id for c in ordered[low:n - high]}
    return _keep_in_order(candidates, kept)


def binned_ratio_filter(
    candidates: Sequence[FilterCandidate],
    beta: float = RATIO_FILTER_BETA,
    bins: int = RATIO_FILTER_BINS,
) -> List[FilterCandidate]:
    """Ratio filter applied per distance bin; bins holding two or fewer are kept whole."""
    if not candidates:
        return []
    distances = [c.distance_m for c in candidates]
    lo, hi = min(distances), max(distances)
    width = (hi - lo) / bins if hi > lo else 0.0

    grouped = {}
    for c in candidates:
        index = 0 if width == 0 else min(int((c.distance_m - lo) / width), bins - 1)
        grouped.setdefault(index, []).append(c)

    kept = set()
    for members in grouped.values():
        survivors = members if len(members) <= 2 else ratio_filter(members, beta)
        kept.update(c.participant_id for c in survivors)
    return _keep_in_order(candidates, kept)


def beta_cut(
    candidates: Sequence[FilterCandidate],
    fraction: float = BETA_CUT_FRACTION,
    min_keep: int = QUORUM,
) -> List[FilterCandidate]:
    """
    Keep the best ceil(fraction * n) candidates by quality score.

    Never cuts below min_keep; with min_keep or fewer candidates nothing is cut.
    """
    n = len(candidates)
    if n <= min_keep:
        return list(candidates)
    keep = max(int(math.ceil(fraction * n)), min_keep)
    ordered = sorted(candidates, key=lambda c: c.quality_score)
    kept = {c.participant_id for c in ordered[:keep]}
    return _keep_in_order(candidates, kept)
