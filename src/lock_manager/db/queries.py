"""Row lookups shared by the domain services."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lock_manager.core.exceptions import NotFoundError
from lock_manager.db.models import AccessCode, Lock


async def get_lock(session: AsyncSession, lock_id: str) -> Lock:
    """Load a lock or raise NotFoundError."""
    lock = await session.get(Lock, lock_id)
    if lock is None:
        raise NotFoundError("Lock", lock_id)
    return lock


async def get_code(session: AsyncSession, code_id: str, lock_id: Optional[str] = None) -> AccessCode:
    """Load an access code, optionally requiring it to belong to a lock."""
    code = await session.get(AccessCode, code_id)
    if code is None or (lock_id is not None and code.lock_id != lock_id):
        raise NotFoundError("Access code", code_id)
    return code


async def get_code_by_slot(session: AsyncSession, lock_id: str, slot: int) -> Optional[AccessCode]:
    result = await session.execute(
        select(AccessCode).where(
            AccessCode.lock_id == lock_id,
            AccessCode.keypad_slot == slot,
        )
    )
    return result.scalars().first()


async def list_codes(session: AsyncSession, lock_id: str) -> list[AccessCode]:
    result = await session.execute(
        select(AccessCode)
        .where(AccessCode.lock_id == lock_id)
        .order_by(AccessCode.created_at.desc())
    )
    return list(result.scalars().all())
