"""Per-lock serialization of state changes."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lock_manager.core.exceptions import AuditWriteError, ConsistencyError, NotFoundError

logger = logging.getLogger(__name__)


class LockGuard:
    """Serializes mutations per lock id.

    Each lock gets its own asyncio.Lock; operations on different locks never
    contend. State changes and their audit entries are committed in the same
    session while the lock is held, so audit sequence order matches the order
    in which the state changes were applied.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker

    def mutex(self, lock_id: str) -> asyncio.Lock:
        """Get the mutex for a lock id."""
        mutex = self._locks.get(lock_id)
        if mutex is None:
            mutex = self._locks[lock_id] = asyncio.Lock()
        return mutex

    def forget(self, lock_id: str) -> None:
        """Drop the mutex of a removed lock."""
        self._locks.pop(lock_id, None)

    def _discard_if_idle(self, lock_id: str, mutex: asyncio.Lock) -> None:
        # Ids that name no lock must not leave a mutex behind
        if not mutex.locked() and self._locks.get(lock_id) is mutex:
            del self._locks[lock_id]

    @asynccontextmanager
    async def transaction(self, lock_id: str) -> AsyncGenerator[AsyncSession, None]:
        """Hold the lock's mutex for one all-or-nothing unit of work.

        Raises:
            ConsistencyError: if the audit append or the commit failed; nothing
                was persisted
        """
        mutex = self.mutex(lock_id)
        try:
            async with mutex:
                async with self._session_maker() as session:
                    try:
                        yield session
                        await session.commit()
                    except AuditWriteError as e:
                        await session.rollback()
                        logger.error("Rolled back change on lock %s: %s", lock_id, e)
                        raise ConsistencyError(
                            f"Change on lock {lock_id} was rolled back because it could not be audited"
                        ) from e
                    except SQLAlchemyError as e:
                        await session.rollback()
                        logger.error("Commit failed on lock %s: %s", lock_id, e)
                        raise ConsistencyError(
                            f"Change on lock {lock_id} could not be committed"
                        ) from e
                    except Exception:
                        await session.rollback()
                        raise
        except NotFoundError as e:
            if e.kind == "Lock" and e.object_id == lock_id:
                self._discard_if_idle(lock_id, mutex)
            raise

    @asynccontextmanager
    async def read(self, lock_id: str) -> AsyncGenerator[AsyncSession, None]:
        """Read a lock's state under its mutex without writing."""
        mutex = self.mutex(lock_id)
        try:
            async with mutex:
                async with self._session_maker() as session:
                    yield session
        except NotFoundError as e:
            if e.kind == "Lock" and e.object_id == lock_id:
                self._discard_if_idle(lock_id, mutex)
            raise
