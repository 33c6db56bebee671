"""
Pluggable singular value decomposition strategies.

Every strategy honours one contract: singular values come back in descending
order, and U @ diag(S) @ Vh reconstructs the input within tolerance for the
rank it retains.

- ExactSVD: torch.linalg.svd, for small matrices (the common case, a few
  dozen participants by a hundred probe rounds).
- TruncatedPowerSVD: randomized block power iteration keeping the leading
  `rank` triplets, for matrices too large to decompose exactly every
  iteration.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from poloc.core.protocol.constants import (
    EXACT_SVD_MAX_DIM,
    TRUNCATED_SVD_RANK,
    TRUNCATED_SVD_OVERSAMPLE,
    TRUNCATED_SVD_POWER_ITERATIONS,
    TRUNCATED_SVD_SEED,
)

logger = logging.getLogger(__name__)


@dataclass
class SVDResult:
    U: torch.Tensor
    S: torch.Tensor
    Vh: torch.Tensor

    @property
    def retained_rank(self) -> int:
        return int(self.S.numel())

    def reconstruct(self, rank: Optional[int] = None) -> torch.Tensor:
        k = self.retained_rank if rank is None else min(rank, self.retained_rank)
        return (self.U[:, :k] * self.S[:k]) @ self.Vh[:k]


class SVDStrategy(ABC):
    name = "base"

    @abstractmethod
    def decompose(self, matrix: torch.Tensor) -> SVDResult:
        ...

    def spectral_norm(self, matrix: torch.Tensor) -> float:
        S = self.decompose(matrix).S
        return float(S[0]) if S.numel() else 0.0


class ExactSVD(SVDStrategy):
    name = "exact"

    def decompose(self, matrix: torch.Tensor) -> SVDResult:
        U, S, Vh = torch.linalg.svd(matrix, full_matrices=False)
        return SVDResult(U, S, Vh)


class TruncatedPowerSVD(SVDStrategy):
    """
    Leading singular triplets via block power iteration.

    A seeded Gaussian sketch spans the initial subspace, which is refined by
    alternating multiplication with M and M^T (re-orthonormalized with QR
    each time). The small projected matrix Q^T M is then decomposed exactly.
    """

    name = "truncated"

    def __init__(
        self,
        rank: int = TRUNCATED_SVD_RANK,
        oversample: int = TRUNCATED_SVD_OVERSAMPLE,
        power_iterations: int = TRUNCATED_SVD_POWER_ITERATIONS,
        seed: int = TRUNCATED_SVD_SEED,
    ):
        if rank < 1:
            raise ValueError(f"rank must be >= 1, got {rank}")
        self.rank = rank
        self.oversample = oversample
        self.power_iterations = power_iterations
        self.seed = seed

    def decompose(self, matrix: torch.Tensor) -> SVDResult:
        rows, cols = matrix.shape
        sketch = min(self.rank + self.oversample, rows, cols)

        generator = torch.Generator(device="cpu").manual_seed(self.seed)
        omega = torch.randn(cols, sketch, generator=generator, dtype=matrix.dtype).to(matrix.device)

        Q, _ = torch.linalg.qr(matrix @ omega)
        for _ in range(self.power_iterations):
            Z, _ = torch.linalg.qr(matrix.T @ Q)
            Q, _ = torch.linalg.qr(matrix @ Z)

        Ub, S, Vh = torch.linalg.svd(Q.T @ matrix, full_matrices=False)
        k = min(self.rank, S.numel())
        return SVDResult((Q @ Ub)[:, :k], S[:k], Vh[:k])


def select_strategy(shape: Tuple[int, int], exact_max_dim: int = EXACT_SVD_MAX_DIM) -> SVDStrategy:
    """Exact SVD for small matrices, truncated power iteration otherwise."""
    if min(shape) <= exact_max_dim:
        return ExactSVD()
    logger.debug(f"Using truncated SVD for {shape[0]}x{shape[1]} matrix")
    return TruncatedPowerSVD()
