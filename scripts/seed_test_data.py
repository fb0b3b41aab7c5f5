"""Generate a fake paid roster with personality snapshots for development testing."""

from __future__ import annotations

import json
import random
import uuid
from pathlib import Path

FIRST_NAMES = [
    "Alice", "Ben", "Carlos", "Dana", "Emily", "Frank", "Grace", "Henry",
    "Iris", "Jack", "Kim", "Leo", "Maya", "Noah", "Olivia", "Pablo",
    "Quinn", "Rosa", "Sam", "Tara", "Uma", "Victor", "Wendy", "Xavier",
    "Yuki", "Zara", "Aaron", "Beth", "Chris", "Diane", "Elena", "Felix",
]

LAST_INITIALS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Rough personality clusters so the roster has natural tables to find
ARCHETYPES = [
    {"energy": 80, "openness": 70, "structure": 40, "affect": 60, "comfort": 75, "lifestyle": 65},
    {"energy": 30, "openness": 55, "structure": 75, "affect": 45, "comfort": 40, "lifestyle": 35},
    {"energy": 55, "openness": 85, "structure": 50, "affect": 80, "comfort": 60, "lifestyle": 50},
]


def _raw(score: float) -> float:
    """Map a 0-100 axis score back onto the raw -10..+10 scale."""
    return round((score - 50) / 5, 1)


def generate_snapshot(rng: random.Random, spread: float = 12.0) -> dict:
    base = rng.choice(ARCHETYPES)
    scores = {
        axis: round(min(100.0, max(0.0, rng.gauss(value, spread))), 1)
        for axis, value in base.items()
    }
    return {
        **{f"{axis}_score": value for axis, value in scores.items()},
        "raw_scores": {
            "E": _raw(scores["energy"]),
            "O": _raw(scores["openness"]),
            "S": _raw(scores["structure"]),
            "A": _raw(scores["affect"]),
            "L": _raw(scores["lifestyle"]),
            "C": _raw(scores["comfort"]),
        },
    }


def generate_participants(count: int = 40, seed: int | None = None) -> list[dict]:
    rng = random.Random(seed)
    participants = []

    for i in range(count):
        first = FIRST_NAMES[i % len(FIRST_NAMES)]
        last_init = LAST_INITIALS[(i // len(FIRST_NAMES)) % len(LAST_INITIALS)]
        # A few registrations are unpaid or skipped the persona test
        roll = rng.random()
        payment_status = "PENDING" if roll < 0.05 else "PAID"
        snapshot = None if 0.05 <= roll < 0.08 else generate_snapshot(rng)

        participants.append({
            "user_id": f"user-{i:03d}",
            "transaction_id": f"txn-{uuid.UUID(int=rng.getrandbits(128)).hex[:10]}",
            "name": f"{first} {last_init}.",
            "email": f"{first.lower()}.{last_init.lower()}{i}@test.com",
            "payment_status": payment_status,
            "snapshot": snapshot,
        })

    return participants


def seed(
    participant_count: int = 40,
    output_dir: str = "data",
    rng_seed: int | None = None,
) -> None:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    print(f"Generating {participant_count} fake participants...")
    participants = generate_participants(participant_count, seed=rng_seed)
    with open(out / "participants.json", "w") as f:
        json.dump(participants, f, indent=2)
    print(f"  → {out / 'participants.json'}")

    eligible = sum(1 for p in participants if p["payment_status"] == "PAID" and p["snapshot"])
    print(f"  {eligible} eligible for matching")
    print("Done!")


if __name__ == "__main__":
    import sys

    count = int(sys.argv[1]) if len(sys.argv) > 1 else 40
    seed(participant_count=count)
