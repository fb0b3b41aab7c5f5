"""Membership rules for operator overrides on an event's groups.

These functions work on the in-memory list of an event's groups. Every check
runs before the first mutation, so a raised error leaves the groups as they
were; the caller persists the returned groups only on success.
"""

from __future__ import annotations

from itertools import combinations

from tablematch.errors import InvariantViolation, NotFoundError
from tablematch.models import (
    GroupMember,
    ManualAssignment,
    MatchingGroup,
    MatchingStatus,
    Participant,
    ScoringWeights,
    utcnow,
)
from tablematch.scoring import compatibility_score, group_aggregates


def find_group_of(groups: list[MatchingGroup], user_id: str) -> MatchingGroup | None:
    """The non-cancelled group holding `user_id`, if any."""
    for group in groups:
        if group.is_active and group.find_member(user_id):
            return group
    return None


def get_group(groups: list[MatchingGroup], group_id: str) -> MatchingGroup:
    for group in groups:
        if group.id == group_id:
            return group
    raise NotFoundError(f"Group {group_id} not found")


def find_group_by_number(groups: list[MatchingGroup], group_number: int) -> MatchingGroup | None:
    for group in groups:
        if group.is_active and group.group_number == group_number:
            return group
    return None


def recalculate(group: MatchingGroup) -> None:
    """Refresh size and score aggregates from the members' score maps."""
    scores = [
        a.match_scores[b.user_id]
        for a, b in combinations(group.members, 2)
        if b.user_id in a.match_scores
    ]
    group.average_match_score, group.min_match_score = group_aggregates(scores)
    group.group_size = len(group.members)
    group.updated_at = utcnow()


def touch(group: MatchingGroup, actor: str) -> None:
    group.has_manual_changes = True
    group.last_modified_by = actor
    group.last_modified_at = utcnow()


def _ensure_unlocked(group: MatchingGroup) -> None:
    if group.is_locked:
        raise InvariantViolation(
            f"Group {group.group_number} is {group.status} and cannot be changed"
        )


def _ensure_capacity(group: MatchingGroup, adding: int, max_group_size: int) -> None:
    if len(group.members) + adding > max_group_size:
        raise InvariantViolation(
            f"Group {group.group_number} is full (max {max_group_size} members)"
        )


def _ensure_ungrouped(groups: list[MatchingGroup], user_id: str) -> None:
    existing = find_group_of(groups, user_id)
    if existing:
        raise InvariantViolation(
            f"User {user_id} is already assigned to group {existing.group_number}"
        )


def _add_member(
    group: MatchingGroup,
    member: GroupMember,
    weights: ScoringWeights,
) -> None:
    member.match_scores = {}
    for peer in group.members:
        score = compatibility_score(member.snapshot, peer.snapshot, weights)
        member.match_scores[peer.user_id] = score
        peer.match_scores[member.user_id] = score
    group.members.append(member)
    recalculate(group)


def _drop_member(group: MatchingGroup, user_id: str) -> GroupMember:
    member = group.find_member(user_id)
    if member is None:
        raise NotFoundError(f"User {user_id} not found in group {group.group_number}")
    group.members = [m for m in group.members if m.user_id != user_id]
    for peer in group.members:
        peer.match_scores.pop(user_id, None)
    recalculate(group)
    return member


def _manual_member(
    participant: Participant,
    actor: str,
    note: str | None,
) -> GroupMember:
    return GroupMember(
        user_id=participant.user_id,
        transaction_id=participant.transaction_id,
        name=participant.name,
        email=participant.email,
        snapshot=participant.snapshot,
        origin=ManualAssignment(assigned_by=actor, note=note),
    )


def create_group(
    groups: list[MatchingGroup],
    event_id: str,
    group_number: int,
    actor: str,
    table_number: str | None = None,
    venue_name: str | None = None,
) -> MatchingGroup:
    if group_number < 1:
        raise InvariantViolation("Group numbers start at 1")
    if find_group_by_number(groups, group_number):
        raise InvariantViolation(f"Group {group_number} already exists")

    group = MatchingGroup(
        event_id=event_id,
        group_number=group_number,
        status=MatchingStatus.MATCHED,
        table_number=table_number,
        venue_name=venue_name,
    )
    touch(group, actor)
    groups.append(group)
    return group


def assign_user(
    groups: list[MatchingGroup],
    event_id: str,
    participant: Participant,
    transaction_id: str,
    target_group_number: int,
    actor: str,
    weights: ScoringWeights,
    max_group_size: int,
    note: str | None = None,
) -> tuple[MatchingGroup, bool]:
    """Place an ungrouped participant into a group by number.

    A group number that does not exist yet is created. Returns the group and
    whether it was created.
    """
    if participant.transaction_id != transaction_id:
        raise NotFoundError(
            f"Transaction {transaction_id} is not the paid registration of user "
            f"{participant.user_id}"
        )
    _ensure_ungrouped(groups, participant.user_id)

    target = find_group_by_number(groups, target_group_number)
    created = target is None
    if target is not None:
        _ensure_unlocked(target)
        _ensure_capacity(target, 1, max_group_size)
    else:
        target = create_group(groups, event_id, target_group_number, actor)

    _add_member(target, _manual_member(participant, actor, note), weights)
    touch(target, actor)
    return target, created


def move_user(
    groups: list[MatchingGroup],
    user_id: str,
    from_group_id: str,
    to_group_id: str,
    actor: str,
    weights: ScoringWeights,
    max_group_size: int,
    note: str | None = None,
) -> tuple[MatchingGroup, MatchingGroup]:
    source = get_group(groups, from_group_id)
    target = get_group(groups, to_group_id)
    if source.id == target.id:
        raise InvariantViolation("Source and target group are the same")
    if source.find_member(user_id) is None:
        raise NotFoundError(f"User {user_id} not found in group {source.group_number}")
    _ensure_unlocked(source)
    _ensure_unlocked(target)
    _ensure_capacity(target, 1, max_group_size)

    member = _drop_member(source, user_id)
    member.is_confirmed = False
    member.origin = ManualAssignment(
        assigned_by=actor, note=note, previous_group_id=source.id
    )
    _add_member(target, member, weights)
    touch(source, actor)
    touch(target, actor)
    return source, target


def remove_user(
    groups: list[MatchingGroup],
    user_id: str,
    group_id: str,
    actor: str,
) -> MatchingGroup:
    """Take a member out of a group. An emptied group is kept for the audit trail."""
    group = get_group(groups, group_id)
    if group.find_member(user_id) is None:
        raise NotFoundError(f"User {user_id} not found in group {group.group_number}")
    _ensure_unlocked(group)

    _drop_member(group, user_id)
    touch(group, actor)
    return group


def bulk_assign(
    groups: list[MatchingGroup],
    participants: list[Participant],
    target_group_id: str,
    actor: str,
    weights: ScoringWeights,
    max_group_size: int,
    note: str | None = None,
) -> MatchingGroup:
    """Assign several participants to one group, all or none."""
    target = get_group(groups, target_group_id)
    _ensure_unlocked(target)

    seen: set[str] = set()
    for participant in participants:
        if participant.user_id in seen:
            raise InvariantViolation(f"User {participant.user_id} appears twice in the batch")
        seen.add(participant.user_id)
        _ensure_ungrouped(groups, participant.user_id)
    _ensure_capacity(target, len(participants), max_group_size)

    for participant in participants:
        _add_member(target, _manual_member(participant, actor, note), weights)
    touch(target, actor)
    return target


def confirm_member(groups: list[MatchingGroup], user_id: str) -> MatchingGroup:
    group = find_group_of(groups, user_id)
    if group is None:
        raise NotFoundError(f"User {user_id} is not assigned to any group")
    group.find_member(user_id).is_confirmed = True
    group.updated_at = utcnow()
    return group


def set_group_status(
    groups: list[MatchingGroup],
    group_id: str,
    status: MatchingStatus,
    actor: str,
) -> MatchingGroup:
    if status not in (MatchingStatus.CONFIRMED, MatchingStatus.CANCELLED):
        raise InvariantViolation("Groups can only be set to CONFIRMED or CANCELLED")
    group = get_group(groups, group_id)
    _ensure_unlocked(group)

    group.status = status
    group.last_modified_by = actor
    group.last_modified_at = utcnow()
    group.updated_at = group.last_modified_at
    return group
