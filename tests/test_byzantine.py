"""
Test Byzantine detection over the participant x round delay matrix.
"""
import math

import pytest

from conftest import corrupted_row
from poloc.core.errors import InsufficientData, ErrorCode
from poloc.core.filtering import ByzantineDetector, RobustPCA, assemble_delay_matrix


def _honest_series(rows=8, cols=24):
    """Rank-1 delays a_i * b_j keyed by participant ID."""
    return {
        f"p{i}": [(1.0 + 0.1 * i) * (20.0 + 5.0 * math.sin(j)) for j in range(cols)]
        for i in range(rows)
    }


class TestAssembleDelayMatrix:
    def test_missing_entries_padded_with_row_median(self):
        matrix = assemble_delay_matrix({"a": [10.0, None, 30.0, 20.0], "b": [5.0, 5.0]})
        assert matrix.shape == (2, 4)
        # Row median of [10, 30, 20] is 20
        assert matrix.values[0, 1].item() == 20.0
        assert matrix.observed[0].tolist() == [True, False, True, True]
        # Short series are padded to the longest one
        assert matrix.observed[1].tolist() == [True, True, False, False]
        assert matrix.values[1, 3].item() == 5.0

    def test_participants_without_samples_are_unscored(self):
        matrix = assemble_delay_matrix({"a": [1.0, 2.0], "dead": [None, None], "zero": [0.0, -1.0]})
        assert matrix.participant_ids == ["a"]
        assert sorted(matrix.unscored) == ["dead", "zero"]


class TestByzantineDetector:
    def test_honest_matrix_has_no_byzantine(self):
        report = ByzantineDetector().detect(_honest_series())
        assert report.byzantine == []
        assert report.converged is True
        assert report.rank == 1
        assert all(score < 0.3 for score in report.scores.values())

    def test_corrupted_row_is_flagged(self):
        """Replacing one participant's series with noise flags exactly that participant."""
        series = _honest_series()
        series["p5"] = corrupted_row(24, 400.0, seed=11)
        report = ByzantineDetector().detect(series)
        assert report.byzantine == ["p5"]
        assert report.is_byzantine("p5")
        assert not report.is_byzantine("p0")
        assert report.scores["p5"] > 0.3

    def test_cleaned_matrix_in_original_units(self):
        series = _honest_series()
        report = ByzantineDetector().detect(series)
        for pid, samples in series.items():
            assert report.cleaned[pid] == pytest.approx(samples, abs=0.05)
            assert min(report.cleaned[pid]) >= 0.0

    def test_scores_are_scale_invariant(self):
        """Normalizing by the median makes scores independent of units."""
        series = _honest_series()
        series["p3"] = corrupted_row(24, 400.0, seed=3)
        scaled = {pid: [v * 1000.0 for v in samples] for pid, samples in series.items()}
        first = ByzantineDetector().detect(series)
        second = ByzantineDetector().detect(scaled)
        assert first.byzantine == second.byzantine
        for pid in series:
            assert first.scores[pid] == pytest.approx(second.scores[pid], abs=1e-4)

    def test_missing_probes_do_not_count_toward_score(self):
        series = _honest_series()
        series["p2"] = [None if j % 4 == 0 else v for j, v in enumerate(series["p2"])]
        report = ByzantineDetector().detect(series)
        assert "p2" not in report.byzantine

    def test_too_small_matrix(self):
        with pytest.raises(InsufficientData) as exc:
            ByzantineDetector().detect({"only": [1.0, 2.0, 3.0]})
        assert exc.value.code == ErrorCode.MATRIX_TOO_SMALL

        with pytest.raises(InsufficientData):
            ByzantineDetector().detect({"a": [1.0], "b": [2.0]})

    def test_unscored_participants_reported(self):
        series = _honest_series(4)
        series["silent"] = [None] * 24
        report = ByzantineDetector().detect(series)
        assert report.unscored == ["silent"]
        assert "silent" not in report.scores

    def test_threshold_is_configurable(self):
        series = _honest_series()
        series["p5"] = corrupted_row(24, 400.0, seed=11)
        report = ByzantineDetector(threshold=1e9).detect(series)
        assert report.byzantine == []

    def test_custom_solver(self):
        solver = RobustPCA(max_iterations=3)
        report = ByzantineDetector(solver).detect(_honest_series())
        assert report.converged is False
        assert report.iterations == 3
        assert report.to_dict()["converged"] is False

    def test_report_to_dict(self):
        report = ByzantineDetector().detect(_honest_series(3, 6))
        data = report.to_dict()
        assert sorted(data["scores"]) == ["p0", "p1", "p2"]
        assert data["byzantine"] == []
        assert data["threshold"] == 0.3
