"""Matching API routes: preview, run, manual overrides, history."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from tablematch.broadcaster import Broadcaster, get_broadcaster
from tablematch.config import settings
from tablematch.models import (
    FormationConfig,
    GroupCandidate,
    MatchingGroup,
    MatchingResult,
    MatchingStatus,
    ScoringWeights,
)
from tablematch.state import state_manager

router = APIRouter(prefix="/api/events/{event_id}/matching")


# --- Request models ---


class FormationRequest(BaseModel):
    target_group_size: int | None = None
    min_group_size: int | None = None
    min_group_score: float | None = None
    threshold_step_down: float | None = None
    min_threshold: float | None = None
    max_attempts_per_threshold: int | None = None
    rng_seed: int | None = None
    venue_tables: int | None = None
    acceptable_threshold: float | None = None
    max_unmatched_percent: float | None = None
    weights: ScoringWeights | None = None

    def to_config(self) -> FormationConfig:
        """Request overrides on top of the configured defaults."""
        defaults = {
            name: getattr(settings, name)
            for name in FormationConfig.model_fields
            if hasattr(settings, name)
        }
        overrides = self.model_dump(exclude_none=True, exclude={"weights"})
        return FormationConfig(**{**defaults, **overrides})

    def to_weights(self) -> ScoringWeights:
        return self.weights or settings.scoring_weights


class AssignUserToGroupPayload(BaseModel):
    user_id: str
    transaction_id: str
    target_group_number: int
    note: str | None = None


class MoveUserPayload(BaseModel):
    user_id: str
    from_group_id: str
    to_group_id: str
    note: str | None = None


class RemoveUserPayload(BaseModel):
    user_id: str
    group_id: str
    reason: str | None = None


class CreateGroupPayload(BaseModel):
    group_number: int
    table_number: str | None = None
    venue_name: str | None = None
    note: str | None = None


class BulkAssignPayload(BaseModel):
    target_group_id: str
    user_ids: list[str]
    note: str | None = None


class ConfirmPayload(BaseModel):
    user_id: str


class GroupStatusPayload(BaseModel):
    status: MatchingStatus
    note: str | None = None


# --- Display helpers ---


def _candidate_view(candidate: GroupCandidate) -> dict:
    return {
        "members": [
            {"user_id": p.user_id, "email": p.email, "name": p.name}
            for p in candidate.members
        ],
        "average_match_score": candidate.average_match_score,
        "min_match_score": candidate.min_match_score,
        "size": candidate.size,
        "threshold_used": candidate.threshold_used,
        "seed_attempt": candidate.seed_attempt,
        "pair_scores": [
            {"pair": list(pair.pair_key), "score": pair.score, "breakdown": pair.breakdown}
            for pair in candidate.pair_scores
        ],
    }


def _result_view(result: MatchingResult) -> dict:
    return {
        "event_id": result.event_id,
        "total_participants": result.total_participants,
        "status": result.status,
        "groups": [_candidate_view(c) for c in result.groups],
        "unmatched_users": [
            {"user_id": p.user_id, "email": p.email, "name": p.name}
            for p in result.unmatched_users
        ],
        "statistics": result.statistics.model_dump(),
        "threshold_breakdown": [b.model_dump() for b in result.threshold_breakdown],
        "warnings": result.warnings,
    }


def _group_summary(group: MatchingGroup) -> dict:
    return {
        "group_id": group.id,
        "group_number": group.group_number,
        "status": group.status,
        "user_ids": [m.user_id for m in group.members],
    }


async def _notify_updated(broadcaster: Broadcaster, event_id: str, *groups: MatchingGroup) -> None:
    for group in groups:
        await broadcaster.broadcast("group_updated", event_id, _group_summary(group))


# --- Formation ---


@router.post("/preview")
async def preview_matching(event_id: str, request: FormationRequest):
    result = await state_manager.preview_groups(
        event_id, request.to_config(), request.to_weights()
    )
    return {"message": "Preview generated; nothing was saved", "result": _result_view(result)}


@router.post("/run")
async def run_matching(
    event_id: str,
    request: FormationRequest,
    x_admin_user: str = Header(default="admin"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    attempt, result, groups = await state_manager.run_matching(
        event_id, request.to_config(), request.to_weights(), actor=x_admin_user
    )
    await broadcaster.broadcast(
        "groups_committed",
        event_id,
        {
            "attempt_number": attempt.attempt_number,
            "status": attempt.status,
            "groups": [_group_summary(g) for g in groups],
        },
    )
    return {
        "message": f"Matching attempt {attempt.attempt_number} committed",
        "event_id": event_id,
        "attempt": attempt.model_dump(mode="json"),
        "total_groups": len(groups),
        "groups": [g.model_dump(mode="json") for g in groups],
        "result": _result_view(result),
    }


# --- Groups ---


@router.get("/groups")
async def get_groups(event_id: str, include_cancelled: bool = False):
    groups = await state_manager.get_groups(event_id, include_cancelled=include_cancelled)
    return {
        "event_id": event_id,
        "total_groups": len(groups),
        "groups": [g.model_dump(mode="json") for g in groups],
    }


@router.get("/unassigned")
async def get_unassigned(event_id: str):
    participants = await state_manager.get_unassigned_participants(event_id)
    return {
        "total": len(participants),
        "participants": [p.model_dump(mode="json") for p in participants],
    }


@router.get("/my-group")
async def get_my_group(event_id: str, user_id: str):
    group = await state_manager.get_user_group(event_id, user_id)
    data = group.model_dump(mode="json")
    for member in data["members"]:
        member["is_you"] = member["user_id"] == user_id
    return data


# --- Manual overrides ---


@router.post("/assign")
async def assign_user(
    event_id: str,
    payload: AssignUserToGroupPayload,
    x_admin_user: str = Header(default="admin"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    group = await state_manager.assign_user_to_group(
        event_id,
        payload.user_id,
        payload.transaction_id,
        payload.target_group_number,
        actor=x_admin_user,
        note=payload.note,
    )
    await _notify_updated(broadcaster, event_id, group)
    return {
        "message": f"User {payload.user_id} assigned to group {group.group_number}",
        "group": group.model_dump(mode="json"),
    }


@router.post("/move")
async def move_user(
    event_id: str,
    payload: MoveUserPayload,
    x_admin_user: str = Header(default="admin"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    source, target = await state_manager.move_user(
        event_id,
        payload.user_id,
        payload.from_group_id,
        payload.to_group_id,
        actor=x_admin_user,
        note=payload.note,
    )
    await _notify_updated(broadcaster, event_id, source, target)
    return {
        "message": (
            f"User {payload.user_id} moved from group {source.group_number} "
            f"to group {target.group_number}"
        ),
        "from_group": source.model_dump(mode="json"),
        "to_group": target.model_dump(mode="json"),
    }


@router.post("/remove")
async def remove_user(
    event_id: str,
    payload: RemoveUserPayload,
    x_admin_user: str = Header(default="admin"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    group = await state_manager.remove_user_from_group(
        event_id, payload.user_id, payload.group_id, actor=x_admin_user, reason=payload.reason
    )
    await _notify_updated(broadcaster, event_id, group)
    return {
        "message": f"User {payload.user_id} removed from group {group.group_number}",
        "group": group.model_dump(mode="json"),
        "group_empty": not group.members,
    }


@router.post("/groups")
async def create_group(
    event_id: str,
    payload: CreateGroupPayload,
    x_admin_user: str = Header(default="admin"),
):
    group = await state_manager.create_group(
        event_id,
        payload.group_number,
        actor=x_admin_user,
        table_number=payload.table_number,
        venue_name=payload.venue_name,
        note=payload.note,
    )
    return {
        "message": f"Group {group.group_number} created",
        "group": group.model_dump(mode="json"),
    }


@router.post("/bulk-assign")
async def bulk_assign(
    event_id: str,
    payload: BulkAssignPayload,
    x_admin_user: str = Header(default="admin"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    group = await state_manager.bulk_assign(
        event_id, payload.target_group_id, payload.user_ids, actor=x_admin_user, note=payload.note
    )
    await _notify_updated(broadcaster, event_id, group)
    return {
        "message": f"{len(payload.user_ids)} user(s) assigned to group {group.group_number}",
        "assigned_count": len(payload.user_ids),
        "group": group.model_dump(mode="json"),
    }


@router.post("/confirm")
async def confirm_member(event_id: str, payload: ConfirmPayload):
    group = await state_manager.confirm_member(event_id, payload.user_id)
    return {
        "message": f"User {payload.user_id} confirmed for group {group.group_number}",
        "group": group.model_dump(mode="json"),
    }


@router.post("/groups/{group_id}/status")
async def set_group_status(
    event_id: str,
    group_id: str,
    payload: GroupStatusPayload,
    x_admin_user: str = Header(default="admin"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    group = await state_manager.set_group_status(
        event_id, group_id, payload.status, actor=x_admin_user, note=payload.note
    )
    await _notify_updated(broadcaster, event_id, group)
    return {
        "message": f"Group {group.group_number} is now {group.status}",
        "group": group.model_dump(mode="json"),
    }


# --- Ledger ---


@router.get("/history")
async def get_history(event_id: str):
    history = await state_manager.get_attempt_history(event_id)
    live = await state_manager.get_live_attempt_number(event_id)
    return {
        "event_id": event_id,
        "total_attempts": len(history),
        "live_attempt_number": live,
        "history": [a.model_dump(mode="json") for a in history],
    }


@router.get("/audit")
async def get_audit(event_id: str):
    entries = await state_manager.get_audit_log(event_id)
    return {"event_id": event_id, "entries": [e.model_dump(mode="json") for e in entries]}
