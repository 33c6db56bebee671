"""
Test the cheap outlier prefilters that run ahead of the decomposition.
"""
import pytest

from poloc.core.filtering import FilterCandidate, beta_cut, binned_ratio_filter, ratio_filter


def _candidate(pid, delay, distance, quality=0.0):
    return FilterCandidate(participant_id=pid, delay_ms=delay, distance_m=distance, quality_score=quality)


def _ids(candidates):
    return [c.participant_id for c in candidates]


class TestRatioFilter:
    def test_small_sets_untouched(self):
        candidates = [_candidate(f"p{i}", 1.0, 1000.0 * (i + 1)) for i in range(6)]
        # floor(0.15 * 6) == 0
        assert _ids(ratio_filter(candidates, 0.15)) == _ids(candidates)

    def test_single_removal_comes_from_high_tail(self):
        candidates = [_candidate(f"p{i}", 1.0, 100.0 * (i + 1)) for i in range(10)]
        kept = ratio_filter(candidates, 0.15)
        assert len(kept) == 9
        assert "p9" not in _ids(kept)

    def test_trims_both_tails_and_keeps_input_order(self):
        # Ratios shuffled relative to input order
        ratios = [500, 100, 2000, 900, 300, 50, 700, 1000, 400, 600,
                  800, 200, 1100, 1200, 1300, 1400, 1500, 1600, 1700, 1800]
        candidates = [_candidate(f"p{i}", 1.0, r) for i, r in enumerate(ratios)]
        kept = ratio_filter(candidates, 0.15)
        # floor(0.15 * 20) == 3: one from the low tail, two from the high tail
        assert len(kept) == 17
        removed = set(_ids(candidates)) - set(_ids(kept))
        assert removed == {"p5", "p2", "p19"}
        assert _ids(kept) == [pid for pid in _ids(candidates) if pid not in removed]

    def test_zero_delay_ratio_is_infinite(self):
        assert _candidate("p", 0.0, 10.0).ratio == float("inf")


class TestBinnedRatioFilter:
    def test_sparse_bins_kept_whole(self):
        candidates = [_candidate("near", 1.0, 100.0), _candidate("far", 1.0, 10_000.0)]
        assert _ids(binned_ratio_filter(candidates, 0.5, bins=10)) == ["near", "far"]

    def test_trims_within_each_bin(self):
        near = [_candidate(f"n{i}", 1.0, 100.0 + i) for i in range(4)]
        far = [_candidate(f"f{i}", 1.0, 10_000.0 - i) for i in range(4)]
        kept = binned_ratio_filter(near + far, 0.5, bins=2)
        # floor(0.5 * 4) == 2 per bin: one low and one high ratio dropped
        assert _ids(kept) == ["n1", "n2", "f1", "f2"]

    def test_empty(self):
        assert binned_ratio_filter([], 0.15) == []


class TestBetaCut:
    def test_keeps_best_fraction_by_quality(self):
        candidates = [_candidate(f"p{i}", 1.0, 1000.0, quality=q)
                      for i, q in enumerate([0.9, 0.1, 0.5, 0.3, 0.7, 0.2, 0.8, 0.4, 0.6, 0.05])]
        kept = beta_cut(candidates, 0.6, min_keep=3)
        assert len(kept) == 6
        assert set(_ids(kept)) == {"p9", "p1", "p5", "p3", "p7", "p2"}

    def test_never_cuts_at_or_below_min_keep(self):
        candidates = [_candidate(f"p{i}", 1.0, 1000.0, quality=i) for i in range(3)]
        assert len(beta_cut(candidates, 0.1, min_keep=3)) == 3

    def test_never_cuts_below_min_keep(self):
        candidates = [_candidate(f"p{i}", 1.0, 1000.0, quality=i) for i in range(5)]
        kept = beta_cut(candidates, 0.2, min_keep=3)
        assert _ids(kept) == ["p0", "p1", "p2"]

    @pytest.mark.parametrize("count,expected", [(4, 3), (5, 3), (10, 6), (11, 7)])
    def test_kept_count(self, count, expected):
        candidates = [_candidate(f"p{i}", 1.0, 1000.0, quality=i) for i in range(count)]
        assert len(beta_cut(candidates, 0.6, min_keep=3)) == expected
