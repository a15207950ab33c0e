"""Tests for lock_manager.core.audit and the per-lock transaction guard."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from lock_manager.core.audit import AuditLog
from lock_manager.core.exceptions import ConsistencyError, ValidationError
from lock_manager.core.guard import LockGuard
from lock_manager.db.models import ActivityAction, ActivityEntry

UTC = timezone.utc


async def _fill(manager, lock_id, commands):
    for i in range(commands):
        if i % 2:
            await manager.dispatcher.unlock(lock_id)
        else:
            await manager.dispatcher.lock(lock_id)


class TestAppend:
    @pytest.mark.asyncio
    async def test_sequence_starts_at_one_per_lock(self, manager, manual_lock, bound_lock):
        a = await manager.audit.read(manual_lock.id)
        b = await manager.audit.read(bound_lock.id)
        assert [e.sequence for e in a.entries] == [1]
        assert [e.sequence for e in b.entries] == [1]
        assert a.entries[0].action == ActivityAction.ADDED

    @pytest.mark.asyncio
    async def test_timestamps_never_go_backwards(self, session_maker):
        start = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        # Clock steps back an hour between the two appends
        ticks = iter([start, start - timedelta(hours=1)])
        audit = AuditLog(session_maker, clock=lambda: next(ticks))
        guard = LockGuard(session_maker)

        async with guard.transaction("lock-a") as session:
            first = await audit.append(session, "lock-a", ActivityAction.LOCK)
        async with guard.transaction("lock-a") as session:
            second = await audit.append(session, "lock-a", ActivityAction.UNLOCK)

        assert second.sequence == first.sequence + 1
        assert second.timestamp >= first.timestamp

    @pytest.mark.asyncio
    async def test_storage_failure_is_a_consistency_error(self, manager, manual_lock):
        failure = OperationalError("INSERT INTO activity_entries", {}, Exception("disk I/O error"))

        with pytest.raises(ConsistencyError):
            async with manager.guard.transaction(manual_lock.id) as session:
                with patch.object(session, "flush", AsyncMock(side_effect=failure)):
                    await manager.audit.append(session, manual_lock.id, ActivityAction.LOCK)

        page = await manager.audit.read(manual_lock.id)
        assert [e.action for e in page.entries] == [ActivityAction.ADDED]

    @pytest.mark.asyncio
    async def test_other_errors_roll_back_and_propagate(self, manager, manual_lock):
        with pytest.raises(ValidationError):
            async with manager.guard.transaction(manual_lock.id) as session:
                await manager.audit.append(session, manual_lock.id, ActivityAction.LOCK)
                raise ValidationError("changed my mind")

        page = await manager.audit.read(manual_lock.id)
        assert len(page.entries) == 1


class TestRead:
    @pytest.mark.asyncio
    async def test_newest_first_with_cursor(self, manager, manual_lock):
        await _fill(manager, manual_lock.id, 5)  # 6 entries in total

        first = await manager.audit.read(manual_lock.id, limit=4)
        assert [e.sequence for e in first.entries] == [6, 5, 4, 3]
        assert first.next_before == 3

        second = await manager.audit.read(manual_lock.id, limit=4, before=first.next_before)
        assert [e.sequence for e in second.entries] == [2, 1]
        assert second.next_before is None

    @pytest.mark.asyncio
    async def test_cursor_is_stable_under_new_appends(self, manager, manual_lock):
        await _fill(manager, manual_lock.id, 3)  # 4 entries

        first = await manager.audit.read(manual_lock.id, limit=2)
        await _fill(manager, manual_lock.id, 2)  # 2 more arrive between pages
        second = await manager.audit.read(manual_lock.id, limit=2, before=first.next_before)

        assert [e.sequence for e in first.entries] == [4, 3]
        assert [e.sequence for e in second.entries] == [2, 1]

    @pytest.mark.asyncio
    async def test_last_full_page_has_no_cursor(self, manager, manual_lock):
        await _fill(manager, manual_lock.id, 3)  # 4 entries

        page = await manager.audit.read(manual_lock.id, limit=4)

        assert len(page.entries) == 4
        assert page.next_before is None

    @pytest.mark.asyncio
    async def test_unknown_lock_reads_empty(self, manager):
        page = await manager.audit.read("missing")
        assert page.entries == []
        assert page.next_before is None

    def test_limit_is_clamped(self):
        audit = AuditLog(MagicMock(), default_limit=50, max_limit=200)
        assert audit.clamp_limit(None) == 50
        assert audit.clamp_limit(0) == 50
        assert audit.clamp_limit(10) == 10
        assert audit.clamp_limit(1000) == 200


class TestVerify:
    @pytest.mark.asyncio
    async def test_intact_trail(self, manager, manual_lock):
        await _fill(manager, manual_lock.id, 3)

        report = await manager.audit.verify(manual_lock.id)

        assert report.intact
        assert report.count == 4
        assert report.last_sequence == 4

    @pytest.mark.asyncio
    async def test_reports_gaps(self, manager, session_maker):
        now = datetime(2025, 6, 1, tzinfo=UTC)
        async with session_maker() as session:
            for sequence in (1, 2, 5):
                session.add(ActivityEntry(
                    lock_id="lock-b",
                    sequence=sequence,
                    timestamp=now,
                    action=ActivityAction.LOCK,
                ))
            await session.commit()

        report = await manager.audit.verify("lock-b")

        assert not report.intact
        assert report.missing == [3, 4]
        assert report.last_sequence == 5
