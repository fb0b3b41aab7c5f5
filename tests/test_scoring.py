"""Tests for pairwise compatibility scoring."""

import random

import pytest

from pydantic import ValidationError

from tablematch.config import Settings
from tablematch.models import AXES, AxisMode, AxisRule, ScoringWeights
from tablematch.scoring import (
    build_compatibility_graph,
    compatibility_score,
    cosine_similarity,
    group_aggregates,
    make_pair_key,
    score_breakdown,
)
from tests.conftest import make_participant, make_snapshot


def random_snapshot(rng: random.Random):
    return make_snapshot(*(rng.uniform(0, 100) for _ in range(6)))


ZERO_AXES = {axis: {"weight": 0} for axis in AXES}


class TestPairKey:
    def test_order_independent(self):
        assert make_pair_key("b", "a") == make_pair_key("a", "b") == ("a", "b")


class TestCompatibilityScore:
    def test_identical_snapshots_score_100(self):
        snap = make_snapshot(70, 20, 40, 90, 10, 55)
        assert compatibility_score(snap, snap, ScoringWeights()) == 100.0

    def test_opposite_snapshots_score_0(self):
        a = make_snapshot(0, 0, 0, 0, 0, 0)
        b = make_snapshot(100, 100, 100, 100, 100, 100)
        assert compatibility_score(a, b, ScoringWeights()) == 0.0

    def test_symmetric(self):
        rng = random.Random(3)
        weights = ScoringWeights(
            energy=AxisRule(weight=2, mode=AxisMode.COMPLEMENTARY),
            raw_cosine_weight=1.5,
        )
        for _ in range(50):
            a, b = random_snapshot(rng), random_snapshot(rng)
            assert compatibility_score(a, b, weights) == compatibility_score(b, a, weights)

    def test_bounded(self):
        rng = random.Random(11)
        weights = ScoringWeights(raw_cosine_weight=3)
        for _ in range(50):
            score = compatibility_score(random_snapshot(rng), random_snapshot(rng), weights)
            assert 0 <= score <= 100

    def test_out_of_range_axis_values_are_clamped(self):
        a = make_snapshot(energy=-40)
        b = make_snapshot(energy=0)
        weights = ScoringWeights(**{
            axis: AxisRule(weight=0)
            for axis in ("openness", "structure", "affect", "comfort", "lifestyle")
        })
        assert compatibility_score(a, b, weights) == 100.0

    def test_complementary_axis_rewards_distance(self):
        weights = ScoringWeights(
            energy=AxisRule(weight=1, mode=AxisMode.COMPLEMENTARY),
            openness=AxisRule(weight=0),
            structure=AxisRule(weight=0),
            affect=AxisRule(weight=0),
            comfort=AxisRule(weight=0),
            lifestyle=AxisRule(weight=0),
        )
        quiet = make_snapshot(energy=10)
        loud = make_snapshot(energy=90)
        assert compatibility_score(quiet, loud, weights) == 80.0
        assert compatibility_score(quiet, quiet, weights) == 0.0

    def test_weights_shift_the_score(self):
        a = make_snapshot(energy=0, openness=50)
        b = make_snapshot(energy=100, openness=50)
        even = compatibility_score(a, b, ScoringWeights())
        energy_heavy = compatibility_score(a, b, ScoringWeights(energy=AxisRule(weight=10)))
        assert energy_heavy < even

    def test_negative_weight_rejected_at_load(self):
        with pytest.raises(ValueError):
            AxisRule(weight=-1)


class TestWeightsValidation:
    def test_all_zero_weights_rejected(self):
        with pytest.raises(ValidationError, match="must not all be zero"):
            ScoringWeights(**ZERO_AXES)

    def test_cosine_weight_alone_is_enough(self):
        weights = ScoringWeights(**ZERO_AXES, raw_cosine_weight=1)
        assert weights.total_weight == 1

    def test_all_zero_weights_rejected_in_settings(self):
        with pytest.raises(ValidationError):
            Settings(scoring_weights=ZERO_AXES)

    def test_default_total_weight(self):
        assert ScoringWeights().total_weight == 6


class TestScoreBreakdown:
    def test_single_axis_carries_whole_score(self):
        weights = ScoringWeights(
            **{**ZERO_AXES, "energy": {"weight": 1, "mode": AxisMode.COMPLEMENTARY}}
        )
        quiet = make_snapshot(energy=10)
        loud = make_snapshot(energy=90)
        assert score_breakdown(quiet, loud, weights) == {"energy": 80.0}

    def test_terms_add_up_to_score(self):
        rng = random.Random(7)
        weights = ScoringWeights(structure=AxisRule(weight=3), raw_cosine_weight=2)
        for _ in range(30):
            a, b = random_snapshot(rng), random_snapshot(rng)
            parts = score_breakdown(a, b, weights)
            assert set(parts) == set(AXES) | {"raw_cosine"}
            assert sum(parts.values()) == pytest.approx(compatibility_score(a, b, weights), abs=0.05)

    def test_zero_weight_axes_are_left_out(self):
        weights = ScoringWeights(affect=AxisRule(weight=0))
        snap = make_snapshot()
        assert "affect" not in score_breakdown(snap, snap, weights)
        assert "raw_cosine" not in score_breakdown(snap, snap, weights)


class TestCosineSimilarity:
    def test_zero_vector_is_zero(self):
        neutral = make_snapshot()
        assert cosine_similarity(neutral, make_snapshot(energy=80)) == 0.0

    def test_parallel_vectors(self):
        a = make_snapshot(energy=60, openness=70)
        b = make_snapshot(energy=70, openness=90)
        assert cosine_similarity(a, b) == pytest.approx(1.0)


class TestGraph:
    def test_complete_graph_with_scores(self):
        participants = [make_participant(i) for i in range(4)]
        graph = build_compatibility_graph(participants, ScoringWeights())
        assert graph.number_of_nodes() == 4
        assert graph.number_of_edges() == 6
        assert graph["user-000"]["user-003"]["weight"] == 100.0
        assert graph.nodes["user-001"]["participant"].user_id == "user-001"

    def test_edges_carry_breakdown(self):
        participants = [make_participant(0), make_participant(1, make_snapshot(energy=0))]
        graph = build_compatibility_graph(participants, ScoringWeights())
        edge = graph["user-000"]["user-001"]
        assert set(edge["breakdown"]) == set(AXES)
        assert edge["breakdown"]["openness"] == pytest.approx(100 / 6, abs=0.01)
        assert sum(edge["breakdown"].values()) == pytest.approx(edge["weight"], abs=0.05)


class TestGroupAggregates:
    def test_mean_and_min(self):
        assert group_aggregates([80.0, 70.0, 90.5]) == (80.17, 70.0)

    def test_empty(self):
        assert group_aggregates([]) == (0.0, 0.0)
