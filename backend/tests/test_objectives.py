"""Tests for audience-scaled objectives."""

import pytest

from tumulte.utils.objectives import (
    calculate_group,
    calculate_individual,
    recalculate_if_significant_change,
)


class TestCalculateIndividual:
    def test_minimum_floor_applies(self):
        """5 viewers at 0.3 rounds to 2, lifted to the minimum of 3."""
        assert calculate_individual(5, 0.3, 3) == 3

    def test_scales_with_audience(self):
        assert calculate_individual(50, 0.2, 3) == 10
        assert calculate_individual(1000, 0.3, 3) == 300

    def test_halves_round_up(self):
        assert calculate_individual(5, 0.3, 0) == 2
        assert calculate_individual(25, 0.1, 0) == 3

    def test_zero_viewers_gets_minimum(self):
        assert calculate_individual(0, 0.5, 4) == 4

    @pytest.mark.parametrize("viewers", [0, 1, 7, 33, 120, 999])
    def test_formula_holds(self, viewers):
        import math

        expected = max(2, int(math.floor(viewers * 0.25 + 0.5)))
        assert calculate_individual(viewers, 0.25, 2) == expected


class TestCalculateGroup:
    def test_total_is_sum_of_locals(self):
        group = calculate_group(
            [
                {"streamer_id": "a", "viewer_count": 100},
                {"streamer_id": "b", "viewer_count": 0},
                {"streamer_id": "c", "viewer_count": 12},
            ],
            0.2,
            3,
        )
        assert group.total_objective == sum(s.local_objective for s in group.snapshots)
        assert [s.local_objective for s in group.snapshots] == [20, 3, 3]

    def test_order_preserved_and_nobody_skipped(self):
        group = calculate_group(
            [{"streamer_id": sid, "viewer_count": 0} for sid in ("z", "a", "m")],
            0.3,
            1,
        )
        assert [s.streamer_id for s in group.snapshots] == ["z", "a", "m"]
        assert all(s.contributions == 0 for s in group.snapshots)


class TestRecalculate:
    def test_small_change_is_ignored(self):
        assert recalculate_if_significant_change(20, 100, 110, 0.2, 3) is None

    def test_significant_change_recomputes(self):
        assert recalculate_if_significant_change(20, 100, 150, 0.2, 3) == 30

    def test_same_value_is_ignored(self):
        """Big swing that stays on the minimum does not churn the objective."""
        assert recalculate_if_significant_change(3, 5, 10, 0.2, 3) is None

    def test_zero_old_viewers_always_recomputes(self):
        assert recalculate_if_significant_change(3, 0, 50, 0.2, 3) == 10
