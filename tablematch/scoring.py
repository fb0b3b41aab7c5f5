"""Pairwise compatibility scoring between personality snapshots."""

from __future__ import annotations

import math
from itertools import combinations

import networkx as nx

from tablematch.models import AXES, AxisMode, Participant, PersonalitySnapshot, ScoringWeights


def make_pair_key(id_a: str, id_b: str) -> tuple[str, str]:
    return (id_a, id_b) if id_a <= id_b else (id_b, id_a)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(max(value, low), high)


def _axis_similarity(a: float, b: float, mode: AxisMode) -> float:
    gap = abs(_clamp(a) - _clamp(b)) / 100.0
    if mode == AxisMode.COMPLEMENTARY:
        return gap
    return 1.0 - gap


def cosine_similarity(a: PersonalitySnapshot, b: PersonalitySnapshot) -> float:
    """Cosine similarity of the raw E/O/S/A vectors, 0 if either is all zeros."""
    v1 = (a.raw_scores.E, a.raw_scores.O, a.raw_scores.S, a.raw_scores.A)
    v2 = (b.raw_scores.E, b.raw_scores.O, b.raw_scores.S, b.raw_scores.A)
    magnitude_1 = math.sqrt(sum(x * x for x in v1))
    magnitude_2 = math.sqrt(sum(x * x for x in v2))
    if magnitude_1 == 0 or magnitude_2 == 0:
        return 0.0
    dot = sum(x * y for x, y in zip(v1, v2))
    return dot / (magnitude_1 * magnitude_2)


def _contributions(
    a: PersonalitySnapshot,
    b: PersonalitySnapshot,
    weights: ScoringWeights,
) -> dict[str, float]:
    denominator = weights.total_weight
    parts: dict[str, float] = {}
    for axis in AXES:
        rule = getattr(weights, axis)
        if rule.weight == 0:
            continue
        similarity = _axis_similarity(
            getattr(a, f"{axis}_score"), getattr(b, f"{axis}_score"), rule.mode
        )
        parts[axis] = 100.0 * rule.weight * similarity / denominator

    if weights.raw_cosine_weight:
        similarity = (cosine_similarity(a, b) + 1) / 2
        parts["raw_cosine"] = 100.0 * weights.raw_cosine_weight * similarity / denominator
    return parts


def _total(parts: dict[str, float]) -> float:
    return round(_clamp(sum(parts.values())), 2)


def compatibility_score(
    a: PersonalitySnapshot,
    b: PersonalitySnapshot,
    weights: ScoringWeights,
) -> float:
    """Score two snapshots on a 0-100 scale.

    Each axis contributes a similarity in [0, 1]: closeness for `similar`
    axes, distance for `complementary` ones. The optional cosine term maps
    [-1, 1] onto [0, 1]. The score is the weighted mean times 100, rounded to
    two decimals. Symmetric in `a` and `b`.
    """
    return _total(_contributions(a, b, weights))


def score_breakdown(
    a: PersonalitySnapshot,
    b: PersonalitySnapshot,
    weights: ScoringWeights,
) -> dict[str, float]:
    """Points each weighted term adds to the score, keyed by axis or `raw_cosine`."""
    return {term: round(value, 2) for term, value in _contributions(a, b, weights).items()}


def build_compatibility_graph(
    participants: list[Participant],
    weights: ScoringWeights,
) -> nx.Graph:
    """Complete weighted graph over participants, one edge per pair.

    Nodes are user ids carrying the participant under the `participant`
    attribute; edge `weight` is the compatibility score and `breakdown` its
    per-term contributions.
    """
    graph = nx.Graph()
    for participant in participants:
        graph.add_node(participant.user_id, participant=participant)

    for a, b in combinations(participants, 2):
        parts = _contributions(a.snapshot, b.snapshot, weights)
        graph.add_edge(
            a.user_id,
            b.user_id,
            weight=_total(parts),
            breakdown={term: round(value, 2) for term, value in parts.items()},
        )
    return graph


def group_aggregates(scores: list[float]) -> tuple[float, float]:
    """(average, minimum) of a group's pairwise scores, (0, 0) when empty."""
    if not scores:
        return 0.0, 0.0
    return round(sum(scores) / len(scores), 2), round(min(scores), 2)
