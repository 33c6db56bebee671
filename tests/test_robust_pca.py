"""
Test the low-rank + sparse decomposition and its SVD strategies.
"""
import math

import pytest
import torch

from poloc.core.errors import ConvergenceFailure, InsufficientData, ValidationError
from poloc.core.filtering import ExactSVD, RobustPCA, TruncatedPowerSVD, select_strategy, shrink
from poloc.core.protocol.constants import default_lambda


def _rank_one(rows=8, cols=24):
    a = torch.tensor([1.0 + 0.1 * i for i in range(rows)], dtype=torch.float64)
    b = torch.tensor([20.0 + 5.0 * math.sin(j) for j in range(cols)], dtype=torch.float64)
    return torch.outer(a, b)


class TestShrink:
    def test_soft_threshold(self):
        x = torch.tensor([-3.0, -0.5, 0.0, 0.5, 3.0], dtype=torch.float64)
        assert shrink(x, 1.0).tolist() == [-2.0, 0.0, 0.0, 0.0, 2.0]


class TestSVDStrategies:
    def test_select_strategy_by_size(self):
        assert isinstance(select_strategy((10, 100), exact_max_dim=64), ExactSVD)
        assert isinstance(select_strategy((100, 200), exact_max_dim=64), TruncatedPowerSVD)

    def test_exact_svd_reconstructs(self):
        M = torch.randn(6, 9, generator=torch.Generator().manual_seed(0), dtype=torch.float64)
        svd = ExactSVD().decompose(M)
        assert torch.allclose(svd.reconstruct(), M, atol=1e-10)
        assert svd.S.tolist() == sorted(svd.S.tolist(), reverse=True)

    def test_truncated_matches_exact_on_low_rank(self):
        """Leading singular values agree when the matrix rank fits the truncation."""
        g = torch.Generator().manual_seed(1)
        M = torch.randn(80, 3, generator=g, dtype=torch.float64) @ torch.randn(3, 120, generator=g, dtype=torch.float64)
        exact = ExactSVD().decompose(M)
        truncated = TruncatedPowerSVD(rank=5).decompose(M)
        assert truncated.retained_rank == 5
        assert torch.allclose(truncated.S[:3], exact.S[:3], rtol=1e-8)
        assert torch.allclose(truncated.reconstruct(), M, atol=1e-8)

    def test_truncated_is_deterministic(self):
        M = _rank_one(70, 90)
        first = TruncatedPowerSVD(rank=2).decompose(M).S
        second = TruncatedPowerSVD(rank=2).decompose(M).S
        assert torch.equal(first, second)

    def test_truncated_rank_must_be_positive(self):
        with pytest.raises(ValueError):
            TruncatedPowerSVD(rank=0)


class TestRobustPCA:
    def test_low_rank_input_roundtrip(self):
        """A clean rank-1 matrix is recovered as L with (numerically) empty S."""
        M = _rank_one()
        result = RobustPCA().decompose(M)
        assert result.converged is True
        assert torch.allclose(result.low_rank, M, atol=1e-3)
        assert result.sparse.abs().max().item() < 1e-3
        assert result.rank == 1
        assert result.iterations <= 100

    def test_reconstruction_identity(self):
        M = _rank_one()
        M[3, 5] += 200.0
        result = RobustPCA().decompose(M)
        R = M - result.low_rank - result.sparse
        assert torch.linalg.norm(R).item() / torch.linalg.norm(M).item() < 1e-5

    def test_isolated_spikes_land_in_sparse(self):
        M = _rank_one()
        M[2, 7] += 300.0
        M[6, 19] += 250.0
        result = RobustPCA().decompose(M)
        S = result.sparse.abs()
        assert S[2, 7].item() > 100.0
        assert S[6, 19].item() > 100.0
        mask = torch.ones_like(S, dtype=torch.bool)
        mask[2, 7] = False
        mask[6, 19] = False
        assert S[mask].max().item() < S[2, 7].item() / 10

    def test_default_lambda(self):
        M = _rank_one(8, 24)
        result = RobustPCA().decompose(M)
        assert result.lam == pytest.approx(1.0 / math.sqrt(24))
        assert default_lambda(8, 24, 2.0) == pytest.approx(2.0 / math.sqrt(24))

    def test_explicit_lambda(self):
        result = RobustPCA(lam=0.5).decompose(_rank_one())
        assert result.lam == 0.5

    def test_zero_matrix(self):
        result = RobustPCA().decompose(torch.zeros(4, 5))
        assert result.converged is True
        assert result.rank == 0
        assert result.iterations == 0
        assert result.low_rank.abs().sum().item() == 0.0

    def test_non_convergence_is_flagged(self):
        M = _rank_one()
        M[0, 0] += 100.0
        result = RobustPCA(max_iterations=2).decompose(M)
        assert result.converged is False
        assert result.iterations == 2
        assert len(result.history) == 2

    def test_strict_mode_raises(self):
        M = _rank_one()
        M[0, 0] += 100.0
        with pytest.raises(ConvergenceFailure) as exc:
            RobustPCA(max_iterations=2, strict=True).decompose(M)
        assert exc.value.details["iterations"] == 2

    def test_input_validation(self):
        with pytest.raises(ValidationError):
            RobustPCA().decompose(torch.ones(3))
        with pytest.raises(InsufficientData):
            RobustPCA().decompose(torch.ones(0, 3))
        bad = torch.ones(3, 3)
        bad[1, 1] = float("nan")
        with pytest.raises(ValidationError):
            RobustPCA().decompose(bad)

    def test_accepts_nested_lists(self):
        result = RobustPCA().decompose([[1.0, 2.0], [2.0, 4.0], [3.0, 6.0]])
        assert result.low_rank.dtype == torch.float64
        assert result.to_dict()["shape"] == [3, 2]
