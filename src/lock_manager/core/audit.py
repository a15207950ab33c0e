"""Append-only audit trail of lock activity."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lock_manager.core.exceptions import AuditWriteError
from lock_manager.core.schedule import as_utc, utcnow
from lock_manager.db.database import get_session_context
from lock_manager.db.models import ActivityAction, ActivityEntry, ActivityMethod

logger = logging.getLogger(__name__)


@dataclass
class ActivityPage:
    """One page of activity, newest first."""

    entries: list[ActivityEntry]
    next_before: Optional[int] = None  # Cursor for the next (older) page


@dataclass
class SequenceReport:
    """Result of checking a lock's audit sequence for gaps."""

    lock_id: str
    count: int
    last_sequence: int
    missing: list[int] = field(default_factory=list)

    @property
    def intact(self) -> bool:
        return not self.missing


class AuditLog:
    """Writes and reads the per-lock activity trail.

    append() is the only write path and must be called inside the per-lock
    transaction of the change it describes (see LockGuard.transaction).
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
        default_limit: int = 50,
        max_limit: int = 200,
    ):
        self._session_maker = session_maker
        self._clock = clock
        self._default_limit = default_limit
        self._max_limit = max_limit

    async def append(
        self,
        session: AsyncSession,
        lock_id: str,
        action: ActivityAction,
        method: ActivityMethod = ActivityMethod.APP,
        code_id: Optional[str] = None,
        code_name: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> ActivityEntry:
        """Append an entry with the next sequence number for the lock.

        Args:
            session: Session of the enclosing per-lock transaction
            lock_id: Lock the entry belongs to
            action: Transition being recorded
            method: How it was initiated
            code_id: Access code involved, if any
            code_name: Display name snapshot of that code
            details: Free-form metadata (actor, provider payload, flags)

        Returns:
            The flushed entry

        Raises:
            AuditWriteError: if the entry could not be written
        """
        try:
            result = await session.execute(
                select(ActivityEntry.sequence, ActivityEntry.timestamp)
                .where(ActivityEntry.lock_id == lock_id)
                .order_by(ActivityEntry.sequence.desc())
                .limit(1)
            )
            last = result.first()

            timestamp = self._clock()
            sequence = 1
            if last is not None:
                sequence = last.sequence + 1
                # Clocks can step back; keep timestamps non-decreasing per lock
                timestamp = max(as_utc(timestamp), as_utc(last.timestamp))

            entry = ActivityEntry(
                lock_id=lock_id,
                sequence=sequence,
                timestamp=as_utc(timestamp),
                action=action,
                method=method,
                code_id=code_id,
                code_name_snapshot=code_name,
                details=details,
            )
            session.add(entry)
            await session.flush()
        except SQLAlchemyError as e:
            raise AuditWriteError(f"Could not append {action.value} for lock {lock_id}: {e}") from e

        logger.info(
            "Audit %s#%d %s%s",
            lock_id, sequence, action.value,
            f" code={code_name}" if code_name else "",
        )
        return entry

    def clamp_limit(self, limit: Optional[int]) -> int:
        if not limit or limit < 1:
            return self._default_limit
        return min(limit, self._max_limit)

    async def read(
        self,
        lock_id: str,
        limit: Optional[int] = None,
        before: Optional[int] = None,
    ) -> ActivityPage:
        """Read entries newest first.

        Args:
            lock_id: Lock to read
            limit: Page size (clamped to the configured maximum)
            before: Only return entries with a sequence below this cursor

        Returns:
            ActivityPage with a cursor for the next page when more may exist
        """
        limit = self.clamp_limit(limit)
        query = (
            select(ActivityEntry)
            .where(ActivityEntry.lock_id == lock_id)
            .order_by(ActivityEntry.sequence.desc())
            .limit(limit)
        )
        if before is not None:
            query = query.where(ActivityEntry.sequence < before)

        async with get_session_context(self._session_maker) as session:
            result = await session.execute(query)
            entries = list(result.scalars().all())

        next_before = None
        if len(entries) == limit and entries[-1].sequence > 1:
            next_before = entries[-1].sequence
        return ActivityPage(entries=entries, next_before=next_before)

    async def verify(self, lock_id: str) -> SequenceReport:
        """Check that a lock's sequence numbers run 1..N without gaps."""
        async with get_session_context(self._session_maker) as session:
            result = await session.execute(
                select(ActivityEntry.sequence)
                .where(ActivityEntry.lock_id == lock_id)
                .order_by(ActivityEntry.sequence)
            )
            sequences = list(result.scalars().all())

        last = sequences[-1] if sequences else 0
        present = set(sequences)
        missing = [n for n in range(1, last + 1) if n not in present]
        if missing:
            logger.warning("Audit gap on lock %s: missing %s", lock_id, missing)
        return SequenceReport(
            lock_id=lock_id, count=len(sequences), last_sequence=last, missing=missing
        )
