"""Group formation engine using greedy seeding with threshold relaxation."""

from __future__ import annotations

import math
import random
from itertools import combinations

import networkx as nx

from tablematch.errors import ConfigurationError, NotFoundError
from tablematch.models import (
    FormationConfig,
    GroupCandidate,
    MatchingResult,
    MatchingStatistics,
    MatchingStatus,
    PairScore,
    Participant,
    ScoringWeights,
    ThresholdBreakdown,
)
from tablematch.scoring import build_compatibility_graph, group_aggregates, make_pair_key


def validate_config(config: FormationConfig) -> None:
    """Reject formation parameters before any scoring work is done."""
    if config.target_group_size < 2:
        raise ConfigurationError("target_group_size must be at least 2")
    if config.min_group_size < 2:
        raise ConfigurationError("min_group_size must be at least 2")
    if config.min_group_size > config.target_group_size:
        raise ConfigurationError("min_group_size cannot exceed target_group_size")
    if config.threshold_step_down <= 0:
        raise ConfigurationError("threshold_step_down must be positive")
    if config.max_threshold_levels < 1:
        raise ConfigurationError("max_threshold_levels must be at least 1")
    if config.max_attempts_per_threshold < 1:
        raise ConfigurationError("max_attempts_per_threshold must be at least 1")
    for name in ("min_group_score", "min_threshold", "acceptable_threshold"):
        value = getattr(config, name)
        if not 0 <= value <= 100:
            raise ConfigurationError(f"{name} must be between 0 and 100")
    if config.min_threshold > config.min_group_score:
        raise ConfigurationError("min_threshold cannot exceed min_group_score")
    if _level_count(config) > config.max_threshold_levels:
        raise ConfigurationError(
            f"threshold_step_down of {config.threshold_step_down} yields more than "
            f"{config.max_threshold_levels} threshold levels"
        )
    if not 0 <= config.max_unmatched_percent <= 100:
        raise ConfigurationError("max_unmatched_percent must be between 0 and 100")
    if config.venue_tables is not None and config.venue_tables < 1:
        raise ConfigurationError("venue_tables must be at least 1")


def threshold_levels(config: FormationConfig) -> list[float]:
    """Decreasing thresholds from min_group_score down to min_threshold inclusive."""
    levels: list[float] = []
    for step in range(_level_count(config) - 1):
        threshold = round(config.min_group_score - step * config.threshold_step_down, 6)
        if threshold <= config.min_threshold:
            break
        levels.append(threshold)
    levels.append(config.min_threshold)
    return levels


def _level_count(config: FormationConfig) -> int:
    span = config.min_group_score - config.min_threshold
    return math.ceil(round(span / config.threshold_step_down, 6)) + 1


def match_status(groups_formed: int, unmatched_count: int) -> MatchingStatus:
    if groups_formed == 0:
        return MatchingStatus.NO_MATCH
    if unmatched_count > 0:
        return MatchingStatus.PARTIALLY_MATCHED
    return MatchingStatus.MATCHED


def form_groups(
    event_id: str,
    participants: list[Participant],
    config: FormationConfig,
    weights: ScoringWeights,
) -> MatchingResult:
    """Partition participants into tables that clear a relaxing score threshold.

    Starting at `config.min_group_score`, every remaining participant gets a
    chance to seed a table; the table grows with the candidate that has the
    best mean score against the current members, provided it clears the
    threshold against each of them. Tables that stay below
    `config.min_group_size` are dissolved. Whoever is left over is retried at
    the next lower threshold; tables already formed are kept as they are.

    Args:
        event_id: Event the participants are registered for.
        participants: Eligible participants, each with a personality snapshot.
        config: Formation parameters.
        weights: Axis weighting used by the compatibility scorer.

    Returns:
        MatchingResult with the tables in formation order, unmatched
        participants, per-threshold breakdown, statistics and warnings.
    """
    validate_config(config)

    roster: dict[str, Participant] = {}
    for participant in participants:
        if participant.snapshot is None:
            raise NotFoundError(
                f"Participant {participant.user_id} has no personality snapshot"
            )
        roster[participant.user_id] = participant
    ordered = sorted(roster.values(), key=lambda p: p.user_id)
    total = len(ordered)

    if total == 0:
        return MatchingResult(
            event_id=event_id,
            total_participants=0,
            status=MatchingStatus.NO_MATCH,
            warnings=["No eligible participants to match"],
        )

    graph = build_compatibility_graph(ordered, weights)
    seed_order = _seed_order([p.user_id for p in ordered], config.rng_seed)

    placed: set[str] = set()
    groups: list[GroupCandidate] = []
    breakdown: list[ThresholdBreakdown] = []

    for threshold in threshold_levels(config):
        remaining = [uid for uid in seed_order if uid not in placed]
        if len(remaining) < config.min_group_size:
            break

        level_groups = _form_groups_at_threshold(graph, remaining, threshold, config)
        breakdown.append(
            ThresholdBreakdown(
                threshold=threshold,
                groups_formed=len(level_groups),
                participants_matched=sum(len(members) for members, _ in level_groups),
            )
        )

        for members, seed_attempt in level_groups:
            placed.update(members)
            groups.append(_build_candidate(graph, members, threshold, seed_attempt))

    unmatched = [p for p in ordered if p.user_id not in placed]
    statistics = calculate_statistics(groups, total, len(unmatched))

    return MatchingResult(
        event_id=event_id,
        total_participants=total,
        status=match_status(len(groups), len(unmatched)),
        groups=groups,
        unmatched_users=unmatched,
        statistics=statistics,
        threshold_breakdown=breakdown,
        warnings=_collect_warnings(config, statistics, total),
    )


def _seed_order(user_ids: list[str], rng_seed: int | None) -> list[str]:
    order = list(user_ids)
    if rng_seed is not None:
        random.Random(rng_seed).shuffle(order)
    return order


def _form_groups_at_threshold(
    graph: nx.Graph,
    remaining: list[str],
    threshold: float,
    config: FormationConfig,
) -> list[tuple[list[str], int]]:
    """Best of several seed orderings at one threshold.

    Attempt k rotates the seed order by k. The attempt placing the most
    participants wins, earliest first on ties.
    """
    best: list[tuple[list[str], int]] = []
    best_coverage = 0

    attempts = min(config.max_attempts_per_threshold, len(remaining))
    for attempt in range(attempts):
        rotation = remaining[attempt:] + remaining[:attempt]
        attempt_groups = _greedy_pass(graph, rotation, threshold, config)
        coverage = sum(len(members) for members in attempt_groups)

        if coverage > best_coverage:
            best_coverage = coverage
            best = [(members, attempt) for members in attempt_groups]

        if coverage == len(remaining):
            break

    return best


def _greedy_pass(
    graph: nx.Graph,
    order: list[str],
    threshold: float,
    config: FormationConfig,
) -> list[list[str]]:
    unplaced = list(order)
    groups: list[list[str]] = []

    for seed in order:
        if seed not in unplaced:
            continue
        pool = [uid for uid in unplaced if uid != seed]
        members = _grow_group(graph, seed, pool, threshold, config.target_group_size)
        if len(members) < config.min_group_size:
            continue
        groups.append(members)
        unplaced = [uid for uid in unplaced if uid not in members]

    return groups


def _grow_group(
    graph: nx.Graph,
    seed: str,
    pool: list[str],
    threshold: float,
    target_size: int,
) -> list[str]:
    members = [seed]
    candidates = [uid for uid in pool if graph[seed][uid]["weight"] >= threshold]

    while len(members) < target_size and candidates:
        best_id: str | None = None
        best_mean = -1.0
        still_viable: list[str] = []

        for uid in candidates:
            scores = [graph[uid][member]["weight"] for member in members]
            # Minimum only falls as members are added
            if min(scores) < threshold:
                continue
            still_viable.append(uid)
            mean = sum(scores) / len(scores)
            if mean > best_mean or (mean == best_mean and best_id is not None and uid < best_id):
                best_id = uid
                best_mean = mean

        if best_id is None:
            break
        members.append(best_id)
        candidates = [uid for uid in still_viable if uid != best_id]

    return members


def _build_candidate(
    graph: nx.Graph,
    members: list[str],
    threshold: float,
    seed_attempt: int,
) -> GroupCandidate:
    pair_scores = [
        PairScore(
            pair_key=make_pair_key(a, b),
            score=graph[a][b]["weight"],
            breakdown=graph[a][b]["breakdown"],
        )
        for a, b in combinations(members, 2)
    ]
    average, minimum = group_aggregates([pair.score for pair in pair_scores])
    return GroupCandidate(
        members=[graph.nodes[uid]["participant"] for uid in members],
        average_match_score=average,
        min_match_score=minimum,
        size=len(members),
        threshold_used=threshold,
        seed_attempt=seed_attempt,
        pair_scores=pair_scores,
    )


def calculate_statistics(
    groups: list[GroupCandidate],
    total_participants: int,
    unmatched_count: int,
) -> MatchingStatistics:
    total_groups = len(groups)
    matched_count = total_participants - unmatched_count
    if total_groups == 0:
        return MatchingStatistics(matched_count=matched_count, unmatched_count=unmatched_count)

    thresholds = [g.threshold_used for g in groups]
    return MatchingStatistics(
        average_group_size=round(matched_count / total_groups, 2),
        average_match_score=round(
            sum(g.average_match_score for g in groups) / total_groups, 2
        ),
        total_groups=total_groups,
        matched_count=matched_count,
        unmatched_count=unmatched_count,
        highest_threshold=max(thresholds),
        lowest_threshold=min(thresholds),
    )


def _collect_warnings(
    config: FormationConfig,
    statistics: MatchingStatistics,
    total_participants: int,
) -> list[str]:
    warnings: list[str] = []

    if total_participants < config.min_group_size:
        warnings.append(
            f"Not enough participants: {total_participants} eligible, "
            f"at least {config.min_group_size} required"
        )
    elif statistics.total_groups == 0:
        warnings.append("No groups could be formed at any threshold")

    if config.venue_tables is not None and statistics.total_groups:
        if statistics.total_groups < config.venue_tables:
            warnings.append(
                f"Only {statistics.total_groups} group(s) formed for "
                f"{config.venue_tables} venue tables"
            )
        elif statistics.total_groups > config.venue_tables:
            warnings.append(
                f"{statistics.total_groups} groups formed but the venue has only "
                f"{config.venue_tables} tables"
            )

    if statistics.total_groups and statistics.lowest_threshold < config.acceptable_threshold:
        warnings.append(
            f"Threshold relaxed to {statistics.lowest_threshold:g}, below the "
            f"acceptable floor of {config.acceptable_threshold:g}"
        )

    if statistics.unmatched_count:
        percent = 100.0 * statistics.unmatched_count / total_participants
        if percent > config.max_unmatched_percent:
            warnings.append(
                f"{statistics.unmatched_count} of {total_participants} participants "
                f"({percent:.0f}%) could not be matched"
            )

    return warnings
