"""Matching state manager wrapping Redis for all read/write operations."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError

from tablematch import overrides
from tablematch.config import settings
from tablematch.errors import ConcurrencyConflict, MatchingTimeout, NotFoundError
from tablematch.matching import form_groups, validate_config
from tablematch.models import (
    AlgorithmicAssignment,
    AuditAction,
    AuditEntry,
    FormationConfig,
    GroupCandidate,
    GroupMember,
    MatchingAttempt,
    MatchingGroup,
    MatchingResult,
    MatchingStatus,
    Participant,
    PaymentStatus,
    PersonalitySnapshot,
    ScoringWeights,
)
from tablematch.redis_client import get_redis

logger = logging.getLogger(__name__)


def _prefix(event_id: str) -> str:
    return f"event:{event_id}"


class MatchingStateManager:
    """Manages rosters, groups, the attempt ledger and the audit log in Redis."""

    # --- Locking ---

    @asynccontextmanager
    async def event_lock(self, event_id: str, wait: float | None = None) -> AsyncIterator[None]:
        """Hold the per-event lock for the duration of the block.

        With `wait=None` the lock is tried once; otherwise acquisition blocks
        for up to `wait` seconds. Failing to acquire raises ConcurrencyConflict.
        """
        r = get_redis()
        lock = r.lock(f"{_prefix(event_id)}:lock", timeout=settings.lock_timeout_seconds)
        if wait is None:
            acquired = await lock.acquire(blocking=False)
        else:
            acquired = await lock.acquire(blocking=True, blocking_timeout=wait)
        if not acquired:
            logger.info(f"Event {event_id} is locked by another operation")
            raise ConcurrencyConflict(
                f"Another matching operation is in progress for event {event_id}"
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning(f"Lock for event {event_id} expired before release")

    # --- Roster ---

    async def upsert_participant(self, event_id: str, participant: Participant) -> Participant:
        r = get_redis()
        await r.hset(
            f"{_prefix(event_id)}:participants",
            participant.user_id,
            participant.model_dump_json(),
        )
        return participant

    async def get_participant(self, event_id: str, user_id: str) -> Participant | None:
        r = get_redis()
        raw = await r.hget(f"{_prefix(event_id)}:participants", user_id)
        if raw:
            return Participant.model_validate_json(raw)
        return None

    async def get_participants(self, event_id: str) -> list[Participant]:
        r = get_redis()
        raw_map = await r.hgetall(f"{_prefix(event_id)}:participants")
        participants = [Participant.model_validate_json(data) for data in raw_map.values()]
        return sorted(participants, key=lambda p: p.user_id)

    async def set_payment_status(
        self, event_id: str, user_id: str, payment_status: PaymentStatus
    ) -> Participant:
        participant = await self.get_participant(event_id, user_id)
        if participant is None:
            raise NotFoundError(f"User {user_id} is not registered for event {event_id}")
        participant.payment_status = payment_status
        return await self.upsert_participant(event_id, participant)

    async def get_snapshot(self, event_id: str, user_id: str) -> PersonalitySnapshot:
        participant = await self.get_participant(event_id, user_id)
        if participant is None or participant.snapshot is None:
            raise NotFoundError(f"No personality snapshot for user {user_id}")
        return participant.snapshot

    async def get_eligible_participants(self, event_id: str) -> list[Participant]:
        """Paid participants with a completed persona test."""
        return [p for p in await self.get_participants(event_id) if p.is_eligible]

    async def get_eligible_participant(self, event_id: str, user_id: str) -> Participant:
        participant = await self.get_participant(event_id, user_id)
        if participant is None:
            raise NotFoundError(f"User {user_id} is not registered for event {event_id}")
        if participant.payment_status != PaymentStatus.PAID:
            raise NotFoundError(f"Payment for user {user_id} is not confirmed")
        if participant.snapshot is None:
            raise NotFoundError(f"User {user_id} has no personality snapshot")
        return participant

    async def get_unassigned_participants(self, event_id: str) -> list[Participant]:
        groups = await self.get_groups(event_id)
        assigned = {m.user_id for g in groups for m in g.members}
        eligible = await self.get_eligible_participants(event_id)
        return [p for p in eligible if p.user_id not in assigned]

    # --- Groups ---

    async def get_all_groups(self, event_id: str) -> list[MatchingGroup]:
        r = get_redis()
        raw_map = await r.hgetall(f"{_prefix(event_id)}:groups")
        groups = [MatchingGroup.model_validate_json(data) for data in raw_map.values()]
        return sorted(groups, key=lambda g: (g.group_number, g.created_at))

    async def get_groups(
        self, event_id: str, include_cancelled: bool = False
    ) -> list[MatchingGroup]:
        groups = await self.get_all_groups(event_id)
        if include_cancelled:
            return groups
        return [g for g in groups if g.is_active]

    async def get_group(self, event_id: str, group_id: str) -> MatchingGroup:
        r = get_redis()
        raw = await r.hget(f"{_prefix(event_id)}:groups", group_id)
        if not raw:
            raise NotFoundError(f"Group {group_id} not found")
        return MatchingGroup.model_validate_json(raw)

    async def get_user_group(self, event_id: str, user_id: str) -> MatchingGroup:
        group = overrides.find_group_of(await self.get_all_groups(event_id), user_id)
        if group is None:
            raise NotFoundError(f"User {user_id} is not assigned to any group")
        return group

    # --- Ledger ---

    async def get_attempt_history(self, event_id: str) -> list[MatchingAttempt]:
        r = get_redis()
        raw_map = await r.hgetall(f"{_prefix(event_id)}:attempts")
        attempts = [MatchingAttempt.model_validate_json(data) for data in raw_map.values()]
        return sorted(attempts, key=lambda a: a.attempt_number)

    async def get_live_attempt_number(self, event_id: str) -> int | None:
        r = get_redis()
        raw = await r.get(f"{_prefix(event_id)}:live_attempt")
        return int(raw) if raw else None

    async def get_live_weights(self, event_id: str) -> ScoringWeights:
        """Weights the live run scored with, so overrides score pairs the same way."""
        attempt_number = await self.get_live_attempt_number(event_id)
        if attempt_number is not None:
            raw = await get_redis().hget(f"{_prefix(event_id)}:attempts", str(attempt_number))
            if raw:
                attempt = MatchingAttempt.model_validate_json(raw)
                if attempt.weights is not None:
                    return attempt.weights
        return settings.scoring_weights

    async def get_audit_log(self, event_id: str) -> list[AuditEntry]:
        r = get_redis()
        raw_list = await r.lrange(f"{_prefix(event_id)}:audit", 0, -1)
        return [AuditEntry.model_validate_json(raw) for raw in raw_list]

    # --- Formation ---

    async def _matchable(self, event_id: str) -> tuple[list[Participant], list[MatchingGroup]]:
        """Eligible participants outside confirmed groups, and the confirmed groups."""
        groups = await self.get_groups(event_id)
        confirmed = [g for g in groups if g.status == MatchingStatus.CONFIRMED]
        seated = {m.user_id for g in confirmed for m in g.members}
        eligible = await self.get_eligible_participants(event_id)
        return [p for p in eligible if p.user_id not in seated], confirmed

    async def _run_engine(
        self,
        event_id: str,
        participants: list[Participant],
        config: FormationConfig,
        weights: ScoringWeights,
    ) -> MatchingResult:
        return await asyncio.wait_for(
            asyncio.to_thread(form_groups, event_id, participants, config, weights),
            timeout=settings.matching_timeout_seconds,
        )

    async def preview_groups(
        self,
        event_id: str,
        config: FormationConfig,
        weights: ScoringWeights,
    ) -> MatchingResult:
        """Run formation without locking or persisting anything."""
        validate_config(config)
        participants, _ = await self._matchable(event_id)
        try:
            return await self._run_engine(event_id, participants, config, weights)
        except asyncio.TimeoutError:
            raise MatchingTimeout(
                f"Preview exceeded {settings.matching_timeout_seconds:g}s"
            ) from None

    async def run_matching(
        self,
        event_id: str,
        config: FormationConfig,
        weights: ScoringWeights,
        actor: str,
    ) -> tuple[MatchingAttempt, MatchingResult, list[MatchingGroup]]:
        """Form and persist groups for an event, superseding the live run.

        Live groups are cancelled and kept for audit, except CONFIRMED groups,
        whose members keep their seats and sit out the new run.
        """
        validate_config(config)
        r = get_redis()
        prefix = _prefix(event_id)

        async with self.event_lock(event_id):
            participants, confirmed = await self._matchable(event_id)
            logger.info(f"Matching run for event {event_id}: {len(participants)} participants")

            started = time.perf_counter()
            try:
                result = await self._run_engine(event_id, participants, config, weights)
            except asyncio.TimeoutError:
                elapsed = time.perf_counter() - started
                attempt_number = await r.incr(f"{prefix}:attempt_counter")
                message = f"Matching exceeded {settings.matching_timeout_seconds:g}s and was aborted"
                attempt = MatchingAttempt(
                    event_id=event_id,
                    attempt_number=attempt_number,
                    status=MatchingStatus.NO_MATCH,
                    total_participants=len(participants),
                    matched_count=0,
                    unmatched_count=len(participants),
                    groups_formed=0,
                    execution_time=round(elapsed, 3),
                    executed_by=actor,
                    config=config,
                    weights=weights,
                    warnings=[message],
                    unmatched_user_ids=[p.user_id for p in participants],
                )
                await r.hset(f"{prefix}:attempts", str(attempt_number), attempt.model_dump_json())
                logger.warning(f"Event {event_id} attempt {attempt_number}: {message}")
                raise MatchingTimeout(message) from None
            elapsed = time.perf_counter() - started

            attempt_number = await r.incr(f"{prefix}:attempt_counter")
            stats = result.statistics
            attempt = MatchingAttempt(
                event_id=event_id,
                attempt_number=attempt_number,
                status=result.status,
                total_participants=result.total_participants,
                matched_count=stats.matched_count,
                unmatched_count=stats.unmatched_count,
                groups_formed=stats.total_groups,
                average_match_score=stats.average_match_score if stats.total_groups else None,
                highest_threshold=stats.highest_threshold,
                lowest_threshold=stats.lowest_threshold,
                execution_time=round(elapsed, 3),
                executed_by=actor,
                config=config,
                weights=weights,
                warnings=result.warnings,
                unmatched_user_ids=[p.user_id for p in result.unmatched_users],
            )

            taken = {g.group_number for g in confirmed}
            new_groups = [
                self._group_from_candidate(event_id, number, candidate, result.status, attempt_number)
                for number, candidate in zip(_free_numbers(taken, len(result.groups)), result.groups)
            ]

            pipe = r.pipeline(transaction=True)
            for group in await self.get_groups(event_id):
                if group.status == MatchingStatus.CONFIRMED:
                    continue
                group.status = MatchingStatus.CANCELLED
                pipe.hset(f"{prefix}:groups", group.id, group.model_dump_json())
            for group in new_groups:
                pipe.hset(f"{prefix}:groups", group.id, group.model_dump_json())
            pipe.hset(f"{prefix}:attempts", str(attempt_number), attempt.model_dump_json())
            pipe.set(f"{prefix}:live_attempt", attempt_number)
            entry = AuditEntry(
                action=AuditAction.RUN,
                event_id=event_id,
                actor=actor,
                note=f"attempt {attempt_number}: {result.status}",
            )
            pipe.rpush(f"{prefix}:audit", entry.model_dump_json())
            await pipe.execute()

        logger.info(
            f"Event {event_id} attempt {attempt_number}: {result.status}, "
            f"{stats.total_groups} groups, {stats.unmatched_count} unmatched "
            f"in {elapsed:.3f}s"
        )
        return attempt, result, new_groups

    @staticmethod
    def _group_from_candidate(
        event_id: str,
        group_number: int,
        candidate: GroupCandidate,
        status: MatchingStatus,
        attempt_number: int,
    ) -> MatchingGroup:
        members = [
            GroupMember(
                user_id=p.user_id,
                transaction_id=p.transaction_id,
                name=p.name,
                email=p.email,
                snapshot=p.snapshot,
                match_scores=candidate.scores_for(p.user_id),
                origin=AlgorithmicAssignment(attempt_number=attempt_number),
            )
            for p in candidate.members
        ]
        return MatchingGroup(
            event_id=event_id,
            group_number=group_number,
            status=status,
            average_match_score=candidate.average_match_score,
            min_match_score=candidate.min_match_score,
            group_size=candidate.size,
            threshold_used=candidate.threshold_used,
            seed_attempt=candidate.seed_attempt,
            attempt_number=attempt_number,
            members=members,
        )

    # --- Manual overrides ---

    async def _commit(
        self, event_id: str, groups: list[MatchingGroup], entry: AuditEntry
    ) -> None:
        r = get_redis()
        prefix = _prefix(event_id)
        pipe = r.pipeline(transaction=True)
        for group in groups:
            pipe.hset(f"{prefix}:groups", group.id, group.model_dump_json())
        pipe.rpush(f"{prefix}:audit", entry.model_dump_json())
        await pipe.execute()
        logger.info(
            f"Event {event_id}: {entry.action} by {entry.actor} "
            f"(users={entry.user_ids}, group={entry.group_id})"
        )

    async def assign_user_to_group(
        self,
        event_id: str,
        user_id: str,
        transaction_id: str,
        target_group_number: int,
        actor: str,
        note: str | None = None,
    ) -> MatchingGroup:
        async with self.event_lock(event_id, wait=settings.override_lock_wait_seconds):
            participant = await self.get_eligible_participant(event_id, user_id)
            groups = await self.get_all_groups(event_id)
            group, created = overrides.assign_user(
                groups,
                event_id,
                participant,
                transaction_id,
                target_group_number,
                actor,
                await self.get_live_weights(event_id),
                settings.max_group_size,
                note=note,
            )
            if created:
                logger.info(f"Event {event_id}: created group {target_group_number} on assignment")
            await self._commit(
                event_id,
                [group],
                AuditEntry(
                    action=AuditAction.ASSIGN,
                    event_id=event_id,
                    actor=actor,
                    user_ids=[user_id],
                    group_id=group.id,
                    note=note,
                ),
            )
        return group

    async def move_user(
        self,
        event_id: str,
        user_id: str,
        from_group_id: str,
        to_group_id: str,
        actor: str,
        note: str | None = None,
    ) -> tuple[MatchingGroup, MatchingGroup]:
        async with self.event_lock(event_id, wait=settings.override_lock_wait_seconds):
            groups = await self.get_all_groups(event_id)
            source, target = overrides.move_user(
                groups,
                user_id,
                from_group_id,
                to_group_id,
                actor,
                await self.get_live_weights(event_id),
                settings.max_group_size,
                note=note,
            )
            await self._commit(
                event_id,
                [source, target],
                AuditEntry(
                    action=AuditAction.MOVE,
                    event_id=event_id,
                    actor=actor,
                    user_ids=[user_id],
                    group_id=target.id,
                    from_group_id=source.id,
                    note=note,
                ),
            )
        return source, target

    async def remove_user_from_group(
        self,
        event_id: str,
        user_id: str,
        group_id: str,
        actor: str,
        reason: str | None = None,
    ) -> MatchingGroup:
        async with self.event_lock(event_id, wait=settings.override_lock_wait_seconds):
            groups = await self.get_all_groups(event_id)
            group = overrides.remove_user(groups, user_id, group_id, actor)
            await self._commit(
                event_id,
                [group],
                AuditEntry(
                    action=AuditAction.REMOVE,
                    event_id=event_id,
                    actor=actor,
                    user_ids=[user_id],
                    from_group_id=group.id,
                    note=reason,
                ),
            )
        if not group.members:
            logger.info(f"Event {event_id}: group {group.group_number} is now empty")
        return group

    async def create_group(
        self,
        event_id: str,
        group_number: int,
        actor: str,
        table_number: str | None = None,
        venue_name: str | None = None,
        note: str | None = None,
    ) -> MatchingGroup:
        async with self.event_lock(event_id, wait=settings.override_lock_wait_seconds):
            groups = await self.get_all_groups(event_id)
            group = overrides.create_group(
                groups,
                event_id,
                group_number,
                actor,
                table_number=table_number,
                venue_name=venue_name,
            )
            await self._commit(
                event_id,
                [group],
                AuditEntry(
                    action=AuditAction.CREATE_GROUP,
                    event_id=event_id,
                    actor=actor,
                    group_id=group.id,
                    note=note,
                ),
            )
        return group

    async def bulk_assign(
        self,
        event_id: str,
        target_group_id: str,
        user_ids: list[str],
        actor: str,
        note: str | None = None,
    ) -> MatchingGroup:
        async with self.event_lock(event_id, wait=settings.override_lock_wait_seconds):
            participants = [
                await self.get_eligible_participant(event_id, user_id) for user_id in user_ids
            ]
            groups = await self.get_all_groups(event_id)
            group = overrides.bulk_assign(
                groups,
                participants,
                target_group_id,
                actor,
                await self.get_live_weights(event_id),
                settings.max_group_size,
                note=note,
            )
            await self._commit(
                event_id,
                [group],
                AuditEntry(
                    action=AuditAction.BULK_ASSIGN,
                    event_id=event_id,
                    actor=actor,
                    user_ids=list(user_ids),
                    group_id=group.id,
                    note=note,
                ),
            )
        return group

    async def confirm_member(self, event_id: str, user_id: str) -> MatchingGroup:
        async with self.event_lock(event_id, wait=settings.override_lock_wait_seconds):
            groups = await self.get_all_groups(event_id)
            group = overrides.confirm_member(groups, user_id)
            await self._commit(
                event_id,
                [group],
                AuditEntry(
                    action=AuditAction.CONFIRM,
                    event_id=event_id,
                    actor=user_id,
                    user_ids=[user_id],
                    group_id=group.id,
                ),
            )
        return group

    async def set_group_status(
        self,
        event_id: str,
        group_id: str,
        status: MatchingStatus,
        actor: str,
        note: str | None = None,
    ) -> MatchingGroup:
        async with self.event_lock(event_id, wait=settings.override_lock_wait_seconds):
            groups = await self.get_all_groups(event_id)
            group = overrides.set_group_status(groups, group_id, status, actor)
            await self._commit(
                event_id,
                [group],
                AuditEntry(
                    action=AuditAction.STATUS_CHANGE,
                    event_id=event_id,
                    actor=actor,
                    group_id=group.id,
                    note=note or str(status),
                ),
            )
        return group


def _free_numbers(taken: set[int], count: int) -> list[int]:
    """The first `count` positive group numbers not in `taken`."""
    numbers: list[int] = []
    candidate = 1
    while len(numbers) < count:
        if candidate not in taken:
            numbers.append(candidate)
        candidate += 1
    return numbers


# Global instance
state_manager = MatchingStateManager()
