"""Roster routes: participants and their payment state, fed by upstream systems."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from tablematch.models import Participant, PaymentStatus, PersonalitySnapshot
from tablematch.state import state_manager

router = APIRouter(prefix="/api/events/{event_id}/participants")


class ParticipantPayload(BaseModel):
    transaction_id: str
    name: str = ""
    email: str = ""
    payment_status: PaymentStatus = PaymentStatus.PAID
    snapshot: PersonalitySnapshot | None = None


class PaymentStatusPayload(BaseModel):
    payment_status: PaymentStatus


@router.get("")
async def list_participants(event_id: str):
    participants = await state_manager.get_participants(event_id)
    return {
        "event_id": event_id,
        "total": len(participants),
        "eligible": sum(1 for p in participants if p.is_eligible),
        "participants": [p.model_dump(mode="json") for p in participants],
    }


@router.put("/{user_id}")
async def upsert_participant(event_id: str, user_id: str, payload: ParticipantPayload):
    participant = await state_manager.upsert_participant(
        event_id, Participant(user_id=user_id, **payload.model_dump())
    )
    return {"ok": True, "participant": participant.model_dump(mode="json")}


@router.post("/{user_id}/payment-status")
async def set_payment_status(event_id: str, user_id: str, payload: PaymentStatusPayload):
    participant = await state_manager.set_payment_status(
        event_id, user_id, payload.payment_status
    )
    return {"ok": True, "participant": participant.model_dump(mode="json")}


@router.get("/{user_id}/snapshot")
async def get_snapshot(event_id: str, user_id: str):
    snapshot = await state_manager.get_snapshot(event_id, user_id)
    return {"user_id": user_id, "snapshot": snapshot.model_dump(mode="json")}
