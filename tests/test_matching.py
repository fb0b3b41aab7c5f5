"""Tests for the group formation engine."""

import random
from itertools import combinations

import pytest

from tablematch.errors import ConfigurationError, NotFoundError
from tablematch.matching import form_groups, match_status, threshold_levels, validate_config
from tablematch.models import (
    AxisMode,
    AxisRule,
    FormationConfig,
    MatchingStatus,
    ScoringWeights,
)
from tablematch.scoring import compatibility_score
from tests.conftest import make_participant, make_participants, make_snapshot

EVENT = "evt-engine"


def energy_only(mode: AxisMode = AxisMode.SIMILAR) -> ScoringWeights:
    return ScoringWeights(
        energy=AxisRule(weight=1, mode=mode),
        openness=AxisRule(weight=0),
        structure=AxisRule(weight=0),
        affect=AxisRule(weight=0),
        comfort=AxisRule(weight=0),
        lifestyle=AxisRule(weight=0),
    )


def random_roster(count: int, seed: int):
    rng = random.Random(seed)
    return [
        make_participant(i, make_snapshot(*(rng.uniform(0, 100) for _ in range(6))))
        for i in range(count)
    ]


# --- Config ---


class TestValidateConfig:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"target_group_size": 1},
            {"min_group_size": 1},
            {"min_group_size": 7, "target_group_size": 6},
            {"threshold_step_down": 0},
            {"max_attempts_per_threshold": 0},
            {"min_threshold": 80, "min_group_score": 70},
            {"min_group_score": 120},
            {"venue_tables": 0},
            {"max_unmatched_percent": 150},
            {"threshold_step_down": 1e-7},
            {"threshold_step_down": 0.1},
            {"max_threshold_levels": 0},
        ],
    )
    def test_rejects_invalid(self, overrides):
        with pytest.raises(ConfigurationError):
            validate_config(FormationConfig(**overrides))

    def test_defaults_are_valid(self):
        validate_config(FormationConfig())

    def test_fine_step_within_level_cap_is_valid(self):
        config = FormationConfig(threshold_step_down=0.25)
        validate_config(config)
        assert len(threshold_levels(config)) == 81

    def test_level_cap_is_configurable(self):
        config = FormationConfig(threshold_step_down=1, max_threshold_levels=10)
        with pytest.raises(ConfigurationError, match="threshold levels"):
            validate_config(config)

    def test_tiny_step_fails_fast(self):
        with pytest.raises(ConfigurationError, match="threshold levels"):
            form_groups(
                EVENT,
                make_participants(6),
                FormationConfig(threshold_step_down=1e-7),
                ScoringWeights(),
            )

    def test_form_groups_validates_config(self):
        with pytest.raises(ConfigurationError, match="target_group_size"):
            form_groups(
                EVENT, make_participants(3), FormationConfig(target_group_size=1), ScoringWeights()
            )


class TestThresholdLevels:
    def test_default_levels(self):
        assert threshold_levels(FormationConfig()) == [70, 65, 60, 55, 50]

    def test_always_ends_at_min_threshold(self):
        config = FormationConfig(min_group_score=72, threshold_step_down=10, min_threshold=50)
        assert threshold_levels(config) == [72, 62, 52, 50]

    def test_single_level(self):
        config = FormationConfig(min_group_score=50, min_threshold=50)
        assert threshold_levels(config) == [50]

    def test_fractional_step_lands_on_exact_levels(self):
        config = FormationConfig(min_group_score=51, threshold_step_down=0.1, min_threshold=50)
        levels = threshold_levels(config)
        assert len(levels) == 11
        assert levels[:3] == [51, 50.9, 50.8]
        assert levels[-1] == 50
        assert levels == sorted(set(levels), reverse=True)


class TestMatchStatus:
    def test_statuses(self):
        assert match_status(0, 5) == MatchingStatus.NO_MATCH
        assert match_status(2, 1) == MatchingStatus.PARTIALLY_MATCHED
        assert match_status(2, 0) == MatchingStatus.MATCHED


# --- Formation ---


class TestFormGroups:
    def test_twelve_compatible_participants_make_two_tables(self):
        result = form_groups(EVENT, make_participants(12), FormationConfig(), ScoringWeights())

        assert result.status == MatchingStatus.MATCHED
        assert [g.size for g in result.groups] == [6, 6]
        assert result.unmatched_users == []
        assert result.statistics.total_groups == 2
        assert result.statistics.average_group_size == 6
        assert result.statistics.average_match_score == 100.0
        assert result.threshold_breakdown[0].threshold == 70
        assert result.threshold_breakdown[0].groups_formed == 2
        assert result.warnings == []

    def test_unreachable_threshold_relaxes_through_every_level(self):
        config = FormationConfig(
            target_group_size=6, min_group_score=90, threshold_step_down=10, min_threshold=50
        )
        result = form_groups(
            EVENT, make_participants(10), config, energy_only(AxisMode.COMPLEMENTARY)
        )

        assert [b.threshold for b in result.threshold_breakdown] == [90, 80, 70, 60, 50]
        assert all(b.groups_formed == 0 for b in result.threshold_breakdown)
        assert result.statistics.unmatched_count == 10
        assert result.status == MatchingStatus.NO_MATCH
        assert "No groups could be formed at any threshold" in result.warnings

    def test_zero_participants(self):
        result = form_groups(EVENT, [], FormationConfig(), ScoringWeights())

        assert result.status == MatchingStatus.NO_MATCH
        assert result.groups == []
        assert result.unmatched_users == []
        assert result.statistics.total_groups == 0
        assert result.warnings

    def test_fewer_than_min_group_size(self):
        result = form_groups(EVENT, make_participants(2), FormationConfig(), ScoringWeights())

        assert result.status == MatchingStatus.NO_MATCH
        assert len(result.unmatched_users) == 2
        assert result.threshold_breakdown == []
        assert any("Not enough participants" in w for w in result.warnings)

    def test_leftovers_below_min_group_size_stay_unmatched(self):
        result = form_groups(EVENT, make_participants(8), FormationConfig(), ScoringWeights())

        assert [g.size for g in result.groups] == [6]
        assert len(result.unmatched_users) == 2
        assert result.status == MatchingStatus.PARTIALLY_MATCHED

    def test_relaxation_places_looser_cluster_later(self):
        # Tight cluster scores 100; loose cluster pairs score 60
        tight = [make_participant(i, make_snapshot(energy=50)) for i in range(3)]
        loose = [
            make_participant(3, make_snapshot(energy=0)),
            make_participant(4, make_snapshot(energy=40)),
            make_participant(5, make_snapshot(energy=20)),
        ]
        config = FormationConfig(target_group_size=3, min_group_score=90, threshold_step_down=10)
        result = form_groups(EVENT, tight + loose, config, energy_only())

        assert [g.threshold_used for g in result.groups] == [90, 60]
        assert {p.user_id for p in result.groups[1].members} == {"user-003", "user-004", "user-005"}
        assert result.status == MatchingStatus.MATCHED

    def test_missing_snapshot_raises(self):
        participants = make_participants(3) + [make_participant(9, with_snapshot=False)]
        with pytest.raises(NotFoundError):
            form_groups(EVENT, participants, FormationConfig(), ScoringWeights())

    def test_input_order_does_not_matter(self):
        roster = random_roster(20, seed=5)
        forward = form_groups(EVENT, roster, FormationConfig(), ScoringWeights())
        backward = form_groups(EVENT, list(reversed(roster)), FormationConfig(), ScoringWeights())
        assert forward.model_dump() == backward.model_dump()


class TestFormationProperties:
    @pytest.mark.parametrize("seed", [1, 2, 3, 4])
    def test_conservation(self, seed):
        roster = random_roster(23, seed)
        result = form_groups(EVENT, roster, FormationConfig(), ScoringWeights())

        placed = [p.user_id for g in result.groups for p in g.members]
        unmatched = [p.user_id for p in result.unmatched_users]
        assert sum(g.size for g in result.groups) + len(unmatched) == result.total_participants
        assert len(set(placed)) == len(placed)
        assert set(placed).isdisjoint(unmatched)

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_threshold_monotonicity(self, seed):
        roster = random_roster(30, seed)
        result = form_groups(EVENT, roster, FormationConfig(), ScoringWeights())

        thresholds = [g.threshold_used for g in result.groups]
        assert thresholds == sorted(thresholds, reverse=True)

    @pytest.mark.parametrize("seed", [1, 2])
    def test_aggregate_correctness(self, seed):
        weights = ScoringWeights(raw_cosine_weight=1)
        result = form_groups(EVENT, random_roster(25, seed), FormationConfig(), weights)

        for group in result.groups:
            scores = [
                compatibility_score(a.snapshot, b.snapshot, weights)
                for a, b in combinations(group.members, 2)
            ]
            assert group.average_match_score == pytest.approx(sum(scores) / len(scores), abs=0.01)
            assert group.min_match_score == pytest.approx(min(scores), abs=0.01)
            assert group.min_match_score >= group.threshold_used
            assert 3 <= group.size <= 6

    def test_deterministic_with_seed(self):
        roster = random_roster(24, seed=9)
        config = FormationConfig(rng_seed=42)
        first = form_groups(EVENT, roster, config, ScoringWeights())
        second = form_groups(EVENT, roster, config, ScoringWeights())
        assert first.model_dump() == second.model_dump()


# --- Warnings ---


class TestWarnings:
    def test_venue_tables_shortfall(self):
        config = FormationConfig(venue_tables=3)
        result = form_groups(EVENT, make_participants(12), config, ScoringWeights())
        assert any("venue tables" in w for w in result.warnings)

    def test_venue_tables_overflow(self):
        config = FormationConfig(venue_tables=1)
        result = form_groups(EVENT, make_participants(12), config, ScoringWeights())
        assert any("only 1 tables" in w for w in result.warnings)

    def test_high_unmatched_percent(self):
        result = form_groups(EVENT, make_participants(8), FormationConfig(), ScoringWeights())
        assert any("could not be matched" in w for w in result.warnings)

    def test_threshold_below_acceptable_floor(self):
        members = [
            make_participant(0, make_snapshot(energy=0)),
            make_participant(1, make_snapshot(energy=40)),
            make_participant(2, make_snapshot(energy=20)),
        ]
        config = FormationConfig(target_group_size=3, acceptable_threshold=65)
        result = form_groups(EVENT, members, config, energy_only())
        assert result.groups[0].threshold_used == 60
        assert any("acceptable floor" in w for w in result.warnings)
