"""
Byzantine participant detection over the participants x rounds delay matrix.

Honest challengers probing the same target see delays that share structure:
each participant has its own baseline (distance, access link) and each round
has its own network conditions, so the clean matrix is close to low rank.
A participant that fabricates or corrupts its series shows up as mass in the
sparse component S of a robust PCA decomposition.

DETECTION FLOW:
===============
1. Assemble the delay matrix. Failed probes (None, NaN, non-positive) are
   padded with that participant's median delay and masked out of scoring.
2. Normalize by the median observed delay so the threshold is unit-free.
3. Decompose M = L + S.
4. Score each participant by mean |S| over its observed entries.
5. Flag participants whose score exceeds the threshold (default 0.3).

The matrix exists only for the duration of one detection call.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import torch

from poloc.core.errors import InsufficientData, ErrorCode
from poloc.core.filtering.robust_pca import RobustPCA, RPCAResult
from poloc.core.protocol.constants import (
    BYZANTINE_SCORE_THRESHOLD,
    MIN_MATRIX_ROWS,
    MIN_MATRIX_COLUMNS,
)

logger = logging.getLogger(__name__)


@dataclass
class DelayMatrix:
    participant_ids: List[str]
    values: torch.Tensor      # padded, float64
    observed: torch.Tensor    # bool mask of real measurements
    unscored: List[str] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.values.shape)


@dataclass
class ByzantineReport:
    participant_ids: List[str]
    byzantine: List[str]
    scores: Dict[str, float]
    cleaned: Dict[str, List[float]]
    rank: int
    converged: bool
    iterations: int
    residual: float
    scale: float
    threshold: float
    unscored: List[str] = field(default_factory=list)
    decomposition: Optional[RPCAResult] = None

    def is_byzantine(self, participant_id: str) -> bool:
        return participant_id in self.byzantine

    def to_dict(self) -> dict:
        return {
            "participants": list(self.participant_ids),
            "byzantine": list(self.byzantine),
            "scores": dict(self.scores),
            "rank": self.rank,
            "converged": self.converged,
            "iterations": self.iterations,
            "residual": self.residual,
            "scale": self.scale,
            "threshold": self.threshold,
            "unscored": list(self.unscored),
        }


def _is_observed(value) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def assemble_delay_matrix(series: Mapping[str, Sequence[Optional[float]]]) -> DelayMatrix:
    """
    Stack per-participant delay series into a padded matrix.

    Participants without a single successful probe cannot be scored and are
    returned in `unscored` instead of as rows.
    """
    ids: List[str] = []
    rows: List[List[Optional[float]]] = []
    unscored: List[str] = []
    for pid, samples in series.items():
        samples = list(samples)
        if any(_is_observed(v) for v in samples):
            ids.append(pid)
            rows.append(samples)
        else:
            unscored.append(pid)

    columns = max((len(r) for r in rows), default=0)
    values = torch.zeros((len(rows), columns), dtype=torch.float64)
    observed = torch.zeros((len(rows), columns), dtype=torch.bool)

    for i, samples in enumerate(rows):
        seen = [float(v) for v in samples if _is_observed(v)]
        fill = float(torch.tensor(seen, dtype=torch.float64).median())
        for j in range(columns):
            v = samples[j] if j < len(samples) else None
            if _is_observed(v):
                values[i, j] = float(v)
                observed[i, j] = True
            else:
                values[i, j] = fill

    return DelayMatrix(ids, values, observed, unscored)


class ByzantineDetector:
    """Scores participants by their share of the sparse corruption component."""

    def __init__(
        self,
        solver: Optional[RobustPCA] = None,
        threshold: float = BYZANTINE_SCORE_THRESHOLD,
        min_rows: int = MIN_MATRIX_ROWS,
        min_columns: int = MIN_MATRIX_COLUMNS,
    ):
        self.solver = solver or RobustPCA()
        self.threshold = threshold
        self.min_rows = min_rows
        self.min_columns = min_columns

    def detect(self, series: Mapping[str, Sequence[Optional[float]]]) -> ByzantineReport:
        """
        Run detection over {participant_id: [rtt_ms or None, ...]}.

        Raises:
            InsufficientData: fewer than min_rows scorable participants or
                min_columns rounds
        """
        matrix = assemble_delay_matrix(series)
        rows, cols = matrix.shape
        if rows < self.min_rows or cols < self.min_columns:
            raise InsufficientData(
                f"Delay matrix {rows}x{cols} too small for decomposition "
                f"(need {self.min_rows}x{self.min_columns})",
                ErrorCode.MATRIX_TOO_SMALL,
                {"rows": rows, "columns": cols},
            )

        scale = float(matrix.values[matrix.observed].median())
        result = self.solver.decompose(matrix.values / scale)

        observed = matrix.observed.double()
        scores_t = (result.sparse.abs() * observed).sum(dim=1) / observed.sum(dim=1)
        scores = {pid: float(scores_t[i]) for i, pid in enumerate(matrix.participant_ids)}
        byzantine = [pid for pid in matrix.participant_ids if scores[pid] > self.threshold]

        cleaned_t = torch.clamp(result.low_rank * scale, min=0.0)
        cleaned = {pid: cleaned_t[i].tolist() for i, pid in enumerate(matrix.participant_ids)}

        if byzantine:
            logger.warning(
                f"Byzantine participants detected: {[p[:16] for p in byzantine]} "
                f"(scores={[round(scores[p], 3) for p in byzantine]})"
            )
        else:
            logger.info(f"No Byzantine participants among {rows} (rank={result.rank})")

        return ByzantineReport(
            participant_ids=list(matrix.participant_ids),
            byzantine=byzantine,
            scores=scores,
            cleaned=cleaned,
            rank=result.rank,
            converged=result.converged,
            iterations=result.iterations,
            residual=result.residual,
            scale=scale,
            threshold=self.threshold,
            unscored=list(matrix.unscored),
            decomposition=result,
        )
