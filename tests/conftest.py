"""Shared test fixtures: fakeredis, test client, roster seeding, broadcast spy."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tablematch.config import settings
from tablematch.models import Participant, PaymentStatus, PersonalitySnapshot, RawScores

EVENT_ID = "evt-test"


@pytest.fixture(autouse=True)
def _test_settings():
    """Short lock waits and default formation parameters for every test."""
    original_wait = settings.override_lock_wait_seconds
    original_timeout = settings.matching_timeout_seconds
    original_max = settings.max_group_size
    settings.override_lock_wait_seconds = 0.2
    settings.matching_timeout_seconds = 30.0
    settings.max_group_size = 8
    yield
    settings.override_lock_wait_seconds = original_wait
    settings.matching_timeout_seconds = original_timeout
    settings.max_group_size = original_max


@pytest.fixture
def fake_redis():
    """Fresh fakeredis instance per test."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest_asyncio.fixture
async def client(fake_redis):
    """FastAPI async test client backed by fakeredis."""
    with (
        patch("tablematch.state.get_redis", return_value=fake_redis),
        patch("tablematch.redis_client.get_redis", return_value=fake_redis),
        patch("tablematch.main.close_pool", new_callable=AsyncMock),
    ):
        from tablematch.main import app

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    await fake_redis.flushall()


@pytest.fixture
def broadcast_spy():
    """Record broadcasts made through the app's broadcaster instead of sending them."""
    from tablematch.main import app

    events: list[dict] = []

    async def record(event: str, event_id: str, data: dict) -> None:
        events.append({"event": event, "event_id": event_id, "data": data})

    with patch.object(app.state.broadcaster, "broadcast", new=record):
        yield events


def make_snapshot(
    energy: float = 50.0,
    openness: float = 50.0,
    structure: float = 50.0,
    affect: float = 50.0,
    comfort: float = 50.0,
    lifestyle: float = 50.0,
) -> PersonalitySnapshot:
    return PersonalitySnapshot(
        energy_score=energy,
        openness_score=openness,
        structure_score=structure,
        affect_score=affect,
        comfort_score=comfort,
        lifestyle_score=lifestyle,
        raw_scores=RawScores(
            E=(energy - 50) / 5,
            O=(openness - 50) / 5,
            S=(structure - 50) / 5,
            A=(affect - 50) / 5,
            L=(lifestyle - 50) / 5,
            C=(comfort - 50) / 5,
        ),
    )


def make_participant(
    index: int,
    snapshot: PersonalitySnapshot | None = None,
    payment_status: PaymentStatus = PaymentStatus.PAID,
    with_snapshot: bool = True,
) -> Participant:
    return Participant(
        user_id=f"user-{index:03d}",
        transaction_id=f"txn-{index:03d}",
        name=f"Test Person {index}",
        email=f"person{index}@test.com",
        payment_status=payment_status,
        snapshot=(snapshot or make_snapshot()) if with_snapshot else None,
    )


def make_participants(count: int) -> list[Participant]:
    """`count` participants with identical snapshots, so every pair scores 100."""
    return [make_participant(i) for i in range(count)]


async def seed_participants(
    fake_redis, participants: list[Participant], event_id: str = EVENT_ID
) -> list[Participant]:
    """Write participants straight into the roster hash."""
    for participant in participants:
        await fake_redis.hset(
            f"event:{event_id}:participants",
            participant.user_id,
            participant.model_dump_json(),
        )
    return participants


async def run_matching(client: AsyncClient, event_id: str = EVENT_ID, **config) -> dict:
    """Commit a matching run via the API and return the response body."""
    resp = await client.post(f"/api/events/{event_id}/matching/run", json=config)
    assert resp.status_code == 200, resp.text
    return resp.json()
