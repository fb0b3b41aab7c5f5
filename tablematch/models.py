from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class MatchingStatus(StrEnum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    PARTIALLY_MATCHED = "PARTIALLY_MATCHED"
    NO_MATCH = "NO_MATCH"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


LOCKED_STATUSES = frozenset({MatchingStatus.CONFIRMED, MatchingStatus.CANCELLED})


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class AxisMode(StrEnum):
    SIMILAR = "similar"
    COMPLEMENTARY = "complementary"


AXES = ("energy", "openness", "structure", "affect", "comfort", "lifestyle")


# --- Personality ---


class RawScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    E: float = 0.0
    O: float = 0.0
    S: float = 0.0
    A: float = 0.0
    L: float = 0.0
    C: float = 0.0


class PersonalitySnapshot(BaseModel):
    """Six-axis trait vector captured when the persona test was completed."""

    model_config = ConfigDict(frozen=True)

    energy_score: float
    openness_score: float
    structure_score: float
    affect_score: float
    comfort_score: float
    lifestyle_score: float
    raw_scores: RawScores = Field(default_factory=RawScores)


class AxisRule(BaseModel):
    weight: float = Field(default=1.0, ge=0)
    mode: AxisMode = AxisMode.SIMILAR


class ScoringWeights(BaseModel):
    """Operator-tunable weighting of the six trait axes.

    `raw_cosine_weight` adds cosine similarity over the raw E/O/S/A vector as
    one more weighted term.
    """

    energy: AxisRule = Field(default_factory=AxisRule)
    openness: AxisRule = Field(default_factory=AxisRule)
    structure: AxisRule = Field(default_factory=AxisRule)
    affect: AxisRule = Field(default_factory=AxisRule)
    comfort: AxisRule = Field(default_factory=AxisRule)
    lifestyle: AxisRule = Field(default_factory=AxisRule)
    raw_cosine_weight: float = Field(default=0.0, ge=0)

    @property
    def total_weight(self) -> float:
        return sum(getattr(self, axis).weight for axis in AXES) + self.raw_cosine_weight

    @model_validator(mode="after")
    def _check_total_weight(self) -> ScoringWeights:
        if self.total_weight <= 0:
            raise ValueError("Scoring weights must not all be zero")
        return self


# --- Roster ---


class Participant(BaseModel):
    user_id: str
    transaction_id: str
    name: str = ""
    email: str = ""
    payment_status: PaymentStatus = PaymentStatus.PAID
    snapshot: PersonalitySnapshot | None = None

    @property
    def is_eligible(self) -> bool:
        return self.payment_status == PaymentStatus.PAID and self.snapshot is not None


# --- Groups ---


class AlgorithmicAssignment(BaseModel):
    kind: Literal["algorithmic"] = "algorithmic"
    attempt_number: int | None = None


class ManualAssignment(BaseModel):
    kind: Literal["manual"] = "manual"
    assigned_by: str
    assigned_at: datetime = Field(default_factory=utcnow)
    note: str | None = None
    previous_group_id: str | None = None


AssignmentOrigin = Annotated[
    AlgorithmicAssignment | ManualAssignment, Field(discriminator="kind")
]


class GroupMember(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    transaction_id: str
    name: str = ""
    email: str = ""
    snapshot: PersonalitySnapshot
    match_scores: dict[str, float] = {}
    is_confirmed: bool = False
    origin: AssignmentOrigin = Field(default_factory=AlgorithmicAssignment)

    @computed_field
    @property
    def is_manually_assigned(self) -> bool:
        return isinstance(self.origin, ManualAssignment)

    @computed_field
    @property
    def assigned_by(self) -> str | None:
        return self.origin.assigned_by if isinstance(self.origin, ManualAssignment) else None

    @computed_field
    @property
    def assigned_at(self) -> datetime | None:
        return self.origin.assigned_at if isinstance(self.origin, ManualAssignment) else None

    @computed_field
    @property
    def assignment_note(self) -> str | None:
        return self.origin.note if isinstance(self.origin, ManualAssignment) else None


class MatchingGroup(BaseModel):
    id: str = Field(default_factory=new_id)
    event_id: str
    group_number: int
    status: MatchingStatus = MatchingStatus.PENDING
    average_match_score: float = 0.0
    min_match_score: float = 0.0
    group_size: int = 0
    threshold_used: float = 0.0
    seed_attempt: int | None = None
    table_number: str | None = None
    venue_name: str | None = None
    has_manual_changes: bool = False
    last_modified_by: str | None = None
    last_modified_at: datetime | None = None
    attempt_number: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    members: list[GroupMember] = []

    @property
    def is_active(self) -> bool:
        return self.status != MatchingStatus.CANCELLED

    @property
    def is_locked(self) -> bool:
        return self.status in LOCKED_STATUSES

    def find_member(self, user_id: str) -> GroupMember | None:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None


# --- Formation ---


class FormationConfig(BaseModel):
    target_group_size: int = 6
    min_group_size: int = 3
    min_group_score: float = 70.0
    threshold_step_down: float = 5.0
    min_threshold: float = 50.0
    max_attempts_per_threshold: int = 10
    rng_seed: int | None = None
    max_threshold_levels: int = 100

    venue_tables: int | None = None
    acceptable_threshold: float = 60.0
    max_unmatched_percent: float = 20.0


class PairScore(BaseModel):
    pair_key: tuple[str, str]
    score: float
    # Each term's share of the score, keyed by axis or `raw_cosine`
    breakdown: dict[str, float] = {}


class GroupCandidate(BaseModel):
    members: list[Participant]
    average_match_score: float
    min_match_score: float
    size: int
    threshold_used: float
    seed_attempt: int
    pair_scores: list[PairScore] = []

    def scores_for(self, user_id: str) -> dict[str, float]:
        """Scores between `user_id` and every other member of the candidate."""
        scores: dict[str, float] = {}
        for pair in self.pair_scores:
            a, b = pair.pair_key
            if a == user_id:
                scores[b] = pair.score
            elif b == user_id:
                scores[a] = pair.score
        return scores


class ThresholdBreakdown(BaseModel):
    threshold: float
    groups_formed: int = 0
    participants_matched: int = 0


class MatchingStatistics(BaseModel):
    average_group_size: float = 0.0
    average_match_score: float = 0.0
    total_groups: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    highest_threshold: float = 0.0
    lowest_threshold: float = 0.0


class MatchingResult(BaseModel):
    event_id: str
    total_participants: int
    status: MatchingStatus
    groups: list[GroupCandidate] = []
    unmatched_users: list[Participant] = []
    statistics: MatchingStatistics = Field(default_factory=MatchingStatistics)
    threshold_breakdown: list[ThresholdBreakdown] = []
    warnings: list[str] = []


# --- Ledger ---


class MatchingAttempt(BaseModel):
    id: str = Field(default_factory=new_id)
    event_id: str
    attempt_number: int
    status: MatchingStatus
    total_participants: int
    matched_count: int
    unmatched_count: int
    groups_formed: int
    average_match_score: float | None = None
    highest_threshold: float = 0.0
    lowest_threshold: float = 0.0
    execution_time: float = 0.0
    executed_by: str | None = None
    config: FormationConfig | None = None
    weights: ScoringWeights | None = None
    warnings: list[str] = []
    unmatched_user_ids: list[str] = []
    created_at: datetime = Field(default_factory=utcnow)


class AuditAction(StrEnum):
    RUN = "run"
    ASSIGN = "assign"
    MOVE = "move"
    REMOVE = "remove"
    CREATE_GROUP = "create_group"
    BULK_ASSIGN = "bulk_assign"
    CONFIRM = "confirm"
    STATUS_CHANGE = "status_change"


class AuditEntry(BaseModel):
    action: AuditAction
    event_id: str
    actor: str
    user_ids: list[str] = []
    group_id: str | None = None
    from_group_id: str | None = None
    note: str | None = None
    at: datetime = Field(default_factory=utcnow)
