"""Load a participant roster (see seed_test_data.py) into Redis for one event."""

from __future__ import annotations

import asyncio
import json
import sys

import redis.asyncio as aioredis

from tablematch.config import settings
from tablematch.models import Participant


async def load_roster(
    event_id: str,
    participants_path: str = "data/participants.json",
    redis_url: str = settings.redis_url,
) -> int:
    """Validate and write every participant. Returns the number loaded."""
    prefix = f"event:{event_id}"

    with open(participants_path) as f:
        participants = [Participant.model_validate(p) for p in json.load(f)]

    r = aioredis.from_url(redis_url, decode_responses=True)
    print(f"Loading {len(participants)} participants into {prefix}...")
    pipe = r.pipeline()
    for participant in participants:
        pipe.hset(f"{prefix}:participants", participant.user_id, participant.model_dump_json())
    await pipe.execute()
    await r.aclose()

    eligible = sum(1 for p in participants if p.is_eligible)
    print(f"  Loaded {len(participants)} participants ({eligible} eligible)")
    return len(participants)


async def _check_existing(redis_url: str, event_id: str) -> bool:
    """Check if the event already has data. Returns True if safe to proceed."""
    prefix = f"event:{event_id}"
    r = aioredis.from_url(redis_url, decode_responses=True)
    count = await r.hlen(f"{prefix}:participants")
    groups = await r.hlen(f"{prefix}:groups")
    await r.aclose()

    if count == 0:
        return True

    print(f"Found {count} participants and {groups} groups in Redis for '{event_id}'.")
    print("  [w] Wipe existing event data and reload")
    print("  [r] Run anyway (overwrite/merge roster)")
    print("  [x] Exit")
    choice = input("  > ").strip().lower()

    if choice == "w":
        r = aioredis.from_url(redis_url, decode_responses=True)
        keys = [key async for key in r.scan_iter(f"{prefix}:*")]
        if keys:
            await r.delete(*keys)
        await r.aclose()
        print(f"  Wiped {len(keys)} keys")
        return True
    elif choice == "r":
        return True
    else:
        print("  Exiting.")
        return False


def main():
    if len(sys.argv) < 2:
        print("usage: load_roster.py EVENT_ID [PARTICIPANTS_JSON]")
        sys.exit(1)
    event_id = sys.argv[1]
    path = sys.argv[2] if len(sys.argv) > 2 else "data/participants.json"

    if not asyncio.run(_check_existing(settings.redis_url, event_id)):
        return
    asyncio.run(load_roster(event_id, path))


if __name__ == "__main__":
    main()
