"""Lock registry: identity, provider binding and status bookkeeping."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from sqlalchemy import select

from lock_manager.config import LockProvider
from lock_manager.core.access_codes import delete_code_in_session
from lock_manager.core.audit import AuditLog
from lock_manager.core.exceptions import LockManagerError, ProviderError, ValidationError
from lock_manager.core.guard import LockGuard
from lock_manager.core.schedule import as_utc, resolve_timezone, utcnow
from lock_manager.db.database import get_session_context
from lock_manager.db.models import AccessCode, ActivityAction, ActivityMethod, Lock, new_id
from lock_manager.db.queries import get_lock, list_codes

if TYPE_CHECKING:
    from lock_manager.core.dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)

STATUS_FIELDS = ("connected", "battery_percent", "currently_locked", "last_sync_at")
EDITABLE_FIELDS = ("name", "external_id", "timezone")


def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Lock name is required")
    if len(name) > 100:
        raise ValidationError("Lock name must be at most 100 characters")
    return name


def _clean_binding(provider: LockProvider, external_id: Optional[str]) -> Optional[str]:
    external_id = (external_id or "").strip() or None
    if provider == LockProvider.MANUAL and external_id is not None:
        raise ValidationError("Manually tracked locks cannot be bound to a device")
    return external_id


def _on_keypad(lock: Lock, code: AccessCode) -> bool:
    """Whether a code's value is held in a device slot."""
    return lock.is_tracked and code.keypad_slot is not None and bool(code.code)


class LockRegistry:
    """Owns lock rows and their status."""

    def __init__(
        self,
        guard: LockGuard,
        audit: AuditLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._guard = guard
        self._audit = audit
        self._clock = clock
        self._dispatcher: Optional["CommandDispatcher"] = None

    async def register(
        self,
        household_id: str,
        name: str,
        provider: LockProvider,
        external_id: Optional[str] = None,
        timezone: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Lock:
        """Create a lock and record that it was added.

        A lock without a device binding starts, and stays, disconnected.
        """
        if not household_id:
            raise ValidationError("Household is required")
        provider = LockProvider(provider)
        external_id = _clean_binding(provider, external_id)
        if timezone:
            resolve_timezone(timezone)

        now = self._clock()
        lock = Lock(
            id=new_id(),
            household_id=household_id,
            name=_clean_name(name),
            provider=provider,
            external_id=external_id,
            timezone=timezone or None,
            connected=external_id is not None,
            created_at=now,
            updated_at=now,
        )
        async with self._guard.transaction(lock.id) as session:
            session.add(lock)
            await session.flush()
            await self._audit.append(
                session,
                lock.id,
                ActivityAction.ADDED,
                details={"actor": actor, "provider": provider.value, "name": lock.name},
            )

        logger.info("Lock registered: %s '%s' (%s)", lock.id, lock.name, provider.value)
        return lock

    async def get(self, lock_id: str) -> Lock:
        async with get_session_context(self._guard.session_maker) as session:
            return await get_lock(session, lock_id)

    async def list_for_household(self, household_id: str) -> list[Lock]:
        async with get_session_context(self._guard.session_maker) as session:
            result = await session.execute(
                select(Lock).where(Lock.household_id == household_id).order_by(Lock.name)
            )
            return list(result.scalars().all())

    async def list_tracked(self) -> list[Lock]:
        """Get every lock bound to a provider device."""
        async with get_session_context(self._guard.session_maker) as session:
            result = await session.execute(
                select(Lock).where(
                    Lock.external_id.is_not(None),
                    Lock.provider != LockProvider.MANUAL,
                )
            )
            return list(result.scalars().all())

    async def find_by_external_id(self, external_id: str) -> Optional[Lock]:
        async with get_session_context(self._guard.session_maker) as session:
            result = await session.execute(select(Lock).where(Lock.external_id == external_id))
            return result.scalars().first()

    async def update(self, lock_id: str, changes: dict[str, Any]) -> Lock:
        """Rename a lock, rebind its device or change its time zone."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update lock fields: {sorted(unknown)}")

        async with self._guard.transaction(lock_id) as session:
            lock = await get_lock(session, lock_id)
            if "name" in changes:
                lock.name = _clean_name(changes["name"])
            if "timezone" in changes:
                if changes["timezone"]:
                    resolve_timezone(changes["timezone"])
                lock.timezone = changes["timezone"] or None
            if "external_id" in changes:
                lock.external_id = _clean_binding(lock.provider, changes["external_id"])
                lock.connected = lock.external_id is not None
            lock.updated_at = self._clock()
        return lock

    def apply_status(self, lock: Lock, changes: dict[str, Any]) -> Lock:
        """Apply a partial status update to a loaded lock row.

        Must be called inside the lock's transaction. Absent fields are left
        untouched.

        Raises:
            ValidationError: for unknown fields, an out-of-range battery level,
                or marking an unbound lock as connected
        """
        unknown = set(changes) - set(STATUS_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown status fields: {sorted(unknown)}")

        if changes.get("connected") and not lock.is_tracked:
            raise ValidationError(f"Lock {lock.id} has no device binding and cannot be connected")

        battery = changes.get("battery_percent")
        if battery is not None and not 0 <= battery <= 100:
            raise ValidationError(f"Battery percent must be between 0 and 100: {battery}")

        if changes.get("last_sync_at") is not None:
            changes = {**changes, "last_sync_at": as_utc(changes["last_sync_at"])}

        for field_name, value in changes.items():
            setattr(lock, field_name, value)
        lock.updated_at = self._clock()
        return lock

    async def update_status(self, lock_id: str, **changes: Any) -> Lock:
        """Partially update connection, battery, lock state or sync time."""
        async with self._guard.transaction(lock_id) as session:
            lock = await get_lock(session, lock_id)
            self.apply_status(lock, changes)
        return lock

    def attach_dispatcher(self, dispatcher: "CommandDispatcher") -> None:
        """Give the registry access to devices for keypad cleanup on removal."""
        self._dispatcher = dispatcher

    async def _restore_slots(self, lock: Lock, cleared: list[AccessCode]) -> None:
        for code in cleared:
            try:
                await self._dispatcher.program_code(lock, code.keypad_slot, code.code)
            except ProviderError as e:
                logger.error(
                    "Slot %d on lock %s was cleared but the lock was not removed: %s",
                    code.keypad_slot, lock.id, e,
                )

    async def remove(self, lock_id: str, actor: Optional[str] = None) -> None:
        """Remove a lock, its codes (each audited) and then the lock itself.

        Keypad slots holding a code on a bound lock are cleared on the device
        first; if any clear fails, nothing is removed and the slots already
        cleared are programmed again. The terminal REMOVED entry is appended
        before the rows are purged; the activity trail is kept.

        Raises:
            NotFoundError: if the lock does not exist
            ProviderError: if the device did not clear a slot
        """
        async with get_session_context(self._guard.session_maker) as session:
            lock = await get_lock(session, lock_id)
            programmed = [c for c in await list_codes(session, lock_id) if _on_keypad(lock, c)]

        if programmed and self._dispatcher is None:
            raise LockManagerError(f"Lock {lock_id} has keypad codes but no device access")

        cleared: list[AccessCode] = []
        try:
            for code in programmed:
                await self._dispatcher.clear_code(lock, code.keypad_slot)
                cleared.append(code)

            async with self._guard.transaction(lock_id) as session:
                current = await get_lock(session, lock_id)
                codes = await list_codes(session, lock_id)
                cleared_ids = {c.id for c in cleared}
                if any(_on_keypad(current, c) and c.id not in cleared_ids for c in codes):
                    raise ValidationError(f"Lock {lock_id} gained keypad codes during removal; retry")
                for code in codes:
                    await delete_code_in_session(
                        session, self._audit, code, details={"actor": actor, "cascade": True}
                    )
                await self._audit.append(
                    session,
                    lock_id,
                    ActivityAction.REMOVED,
                    method=ActivityMethod.APP,
                    details={"actor": actor, "name": current.name, "codes_removed": len(codes)},
                )
                await session.delete(current)
        except Exception:
            await self._restore_slots(lock, cleared)
            raise

        self._guard.forget(lock_id)
        logger.info("Lock removed: %s with %d codes", lock_id, len(codes))
