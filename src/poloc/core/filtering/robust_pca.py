"""
Robust PCA: M = L + S with L low-rank and S sparse.

Solved with the inexact augmented Lagrange multiplier method:

    L <- SVT(M - S + Y/mu, 1/mu)          singular value soft-thresholding
    S <- shrink(M - L + Y/mu, lambda/mu)  elementwise soft-thresholding
    Y <- Y + mu * (M - L - S)             dual ascent
    mu <- min(rho * mu, mu_max)

Stops when the relative residual ||M - L - S||_F / ||M||_F and the relative
change of L and S both fall below tolerance, or at the iteration cap. Hitting
the cap is reported (converged=False) and the best-effort L, S are returned.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import torch

from poloc.core.errors import ConvergenceFailure, InsufficientData, ValidationError, ErrorCode
from poloc.core.filtering.decomposition import SVDStrategy, select_strategy
from poloc.core.protocol.constants import (
    RPCA_TOLERANCE,
    RPCA_MAX_ITERATIONS,
    RPCA_RHO,
    RPCA_MU_SCALE,
    RPCA_MU_MAX_FACTOR,
    RPCA_LAMBDA_SCALE,
    RPCA_RANK_EPSILON,
    EXACT_SVD_MAX_DIM,
    default_lambda,
)

logger = logging.getLogger(__name__)


@dataclass
class RPCAResult:
    low_rank: torch.Tensor
    sparse: torch.Tensor
    rank: int
    iterations: int
    converged: bool
    residual: float
    lam: float
    strategy: str = "exact"
    history: List[dict] = field(default_factory=list)

    @property
    def sparsity(self) -> float:
        """Fraction of non-zero entries in S."""
        if self.sparse.numel() == 0:
            return 0.0
        return float((self.sparse.abs() > 1e-10).double().mean())

    def to_dict(self) -> dict:
        return {
            "shape": list(self.low_rank.shape),
            "rank": self.rank,
            "iterations": self.iterations,
            "converged": self.converged,
            "residual": self.residual,
            "lambda": self.lam,
            "sparsity": self.sparsity,
            "strategy": self.strategy,
        }


def shrink(x: torch.Tensor, tau: float) -> torch.Tensor:
    """Elementwise soft-thresholding: sign(x) * max(|x| - tau, 0)."""
    return torch.sign(x) * torch.clamp(x.abs() - tau, min=0.0)


class RobustPCA:
    """
    Low-rank + sparse decomposition.

    Args:
        tolerance: stopping threshold for residual and relative change
        max_iterations: iteration cap
        rho: geometric growth factor of mu
        lambda_scale: c in lambda = c / sqrt(max(m, n)); ignored when lam is given
        lam: explicit sparsity weight
        strategy: SVD strategy; chosen per matrix shape when None
        strict: raise ConvergenceFailure instead of flagging
    """

    def __init__(
        self,
        tolerance: float = RPCA_TOLERANCE,
        max_iterations: int = RPCA_MAX_ITERATIONS,
        rho: float = RPCA_RHO,
        lambda_scale: float = RPCA_LAMBDA_SCALE,
        lam: Optional[float] = None,
        strategy: Optional[SVDStrategy] = None,
        exact_max_dim: int = EXACT_SVD_MAX_DIM,
        mu_scale: float = RPCA_MU_SCALE,
        mu_max_factor: float = RPCA_MU_MAX_FACTOR,
        rank_epsilon: float = RPCA_RANK_EPSILON,
        strict: bool = False,
    ):
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.rho = rho
        self.lambda_scale = lambda_scale
        self.lam = lam
        self.strategy = strategy
        self.exact_max_dim = exact_max_dim
        self.mu_scale = mu_scale
        self.mu_max_factor = mu_max_factor
        self.rank_epsilon = rank_epsilon
        self.strict = strict

    def decompose(self, matrix) -> RPCAResult:
        M = torch.as_tensor(matrix, dtype=torch.float64)
        if M.dim() != 2:
            raise ValidationError(f"Expected a 2-D matrix, got shape {tuple(M.shape)}")
        if M.numel() == 0:
            raise InsufficientData("Cannot decompose an empty matrix", ErrorCode.EMPTY_MEASUREMENTS)
        if not torch.isfinite(M).all():
            raise ValidationError("Matrix contains non-finite entries; pad missing values first")

        rows, cols = M.shape
        strategy = self.strategy or select_strategy((rows, cols), self.exact_max_dim)
        lam = self.lam if self.lam is not None else default_lambda(rows, cols, self.lambda_scale)

        norm_m = torch.linalg.norm(M).item()
        if norm_m == 0.0:
            zeros = torch.zeros_like(M)
            return RPCAResult(zeros, zeros.clone(), 0, 0, True, 0.0, lam, strategy.name)

        spectral = strategy.spectral_norm(M)
        mu = self.mu_scale / spectral
        mu_max = mu * self.mu_max_factor

        # Dual initialization from Lin, Chen & Ma (2010)
        Y = M / max(spectral, M.abs().max().item() / lam)
        L = torch.zeros_like(M)
        S = torch.zeros_like(M)

        history: List[dict] = []
        converged = False
        residual = 1.0
        rank = 0
        iteration = 0

        for iteration in range(1, self.max_iterations + 1):
            # Dual ascent below is Y += mu * (M - L - S), hence +Y/mu in both updates
            L_next, rank = self._singular_value_threshold(M - S + Y / mu, 1.0 / mu, strategy)
            S_next = shrink(M - L_next + Y / mu, lam / mu)

            R = M - L_next - S_next
            Y = Y + mu * R

            residual = torch.linalg.norm(R).item() / norm_m
            change = max(
                torch.linalg.norm(L_next - L).item(),
                torch.linalg.norm(S_next - S).item(),
            ) / norm_m
            L, S = L_next, S_next

            history.append({"iteration": iteration, "residual": residual, "change": change, "mu": mu, "rank": rank})

            if residual < self.tolerance and change < self.tolerance:
                converged = True
                break
            mu = min(mu * self.rho, mu_max)

        result = RPCAResult(
            low_rank=L,
            sparse=S,
            rank=rank,
            iterations=iteration,
            converged=converged,
            residual=residual,
            lam=lam,
            strategy=strategy.name,
            history=history,
        )

        if converged:
            logger.debug(f"RPCA converged in {iteration} iterations (rank={rank}, residual={residual:.2e})")
        else:
            logger.warning(
                f"RPCA stopped at iteration cap {self.max_iterations} "
                f"(residual={residual:.2e}); using best-effort decomposition"
            )
            if self.strict:
                raise ConvergenceFailure(iteration, residual, result)
        return result

    def _singular_value_threshold(self, X: torch.Tensor, tau: float, strategy: SVDStrategy):
        svd = strategy.decompose(X)
        shrunk = torch.clamp(svd.S - tau, min=0.0)
        rank = int((shrunk > self.rank_epsilon).sum().item())
        if rank == 0:
            return torch.zeros_like(X), 0
        low_rank = (svd.U[:, :rank] * shrunk[:rank]) @ svd.Vh[:rank]
        return low_rank, rank
