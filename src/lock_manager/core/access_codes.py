"""Access code store: create, update, disable and delete credentials."""

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from lock_manager.core.audit import AuditLog
from lock_manager.core.exceptions import ProviderError, ValidationError
from lock_manager.core.guard import LockGuard
from lock_manager.core.schedule import as_utc, normalize_policy, utcnow
from lock_manager.db.database import get_session_context
from lock_manager.db.models import AccessCode, ActivityAction, ActivityMethod, new_id
from lock_manager.db.queries import get_code, get_code_by_slot, get_lock, list_codes

if TYPE_CHECKING:
    from lock_manager.core.dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^\d{4,10}$")

GRANTEE_FIELDS = ("vendor_id", "person_id", "guest_access_id")
POLICY_KEYS = (
    "schedule_type",
    "starts_at",
    "expires_at",
    "schedule_days",
    "schedule_start_time",
    "schedule_end_time",
)
CREATE_FIELDS = ("name", "code", "keypad_slot", "is_active", *GRANTEE_FIELDS, *POLICY_KEYS)
UPDATE_FIELDS = ("name", "is_active", *GRANTEE_FIELDS, *POLICY_KEYS)


def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Code name is required")
    if len(name) > 100:
        raise ValidationError("Code name must be at most 100 characters")
    return name


def _check_grantee(values: dict[str, Any]) -> None:
    linked = [f for f in GRANTEE_FIELDS if values.get(f)]
    if len(linked) > 1:
        raise ValidationError(f"A code can be linked to one grantee only, got {linked}")


def _differs(old: Any, new: Any) -> bool:
    if isinstance(old, datetime) and isinstance(new, datetime):
        return as_utc(old) != as_utc(new)
    return old != new


async def delete_code_in_session(
    session,
    audit: AuditLog,
    code: AccessCode,
    method: ActivityMethod = ActivityMethod.APP,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Audit a code's deletion with a name snapshot, then delete the row."""
    await audit.append(
        session,
        code.lock_id,
        ActivityAction.CODE_DELETED,
        method=method,
        code_id=code.id,
        code_name=code.name,
        details=details,
    )
    await session.delete(code)


class AccessCodeStore:
    """Owns the access codes of every lock.

    Validity is never stored here: it depends on the time of the question and
    is computed by the schedule evaluator on demand.
    """

    def __init__(
        self,
        guard: LockGuard,
        audit: AuditLog,
        dispatcher: "CommandDispatcher",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._guard = guard
        self._audit = audit
        self._dispatcher = dispatcher
        self._clock = clock

    def _validate_new(self, fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - set(CREATE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown access code fields: {sorted(unknown)}")

        values = {name: fields.get(name) for name in CREATE_FIELDS}
        values["name"] = _clean_name(values["name"])
        values["is_active"] = True if values["is_active"] is None else bool(values["is_active"])

        if values["code"] is not None:
            values["code"] = str(values["code"]).strip()
            if not CODE_PATTERN.match(values["code"]):
                raise ValidationError("Code must be 4 to 10 digits")
        slot = values["keypad_slot"]
        if slot is not None and (not isinstance(slot, int) or slot < 1):
            raise ValidationError(f"Keypad slot must be a positive number: {slot}")

        _check_grantee(values)
        return normalize_policy(values)

    async def create(
        self, lock_id: str, fields: dict[str, Any], actor: Optional[str] = None
    ) -> AccessCode:
        """Create a code on a lock.

        When the lock is bound to a device and the code has both a value and
        a keypad slot, the value is programmed into the device first.

        Raises:
            ValidationError: if the policy is inconsistent
            NotFoundError: if the lock does not exist
            ProviderError: if the device did not accept the code
        """
        values = self._validate_new(fields)
        slot = values["keypad_slot"]

        async with self._guard.read(lock_id) as session:
            lock = await get_lock(session, lock_id)
            if slot is not None and await get_code_by_slot(session, lock_id, slot):
                raise ValidationError(f"Keypad slot {slot} is already used on lock {lock_id}")

        programmed = False
        if lock.is_tracked and slot is not None and values["code"]:
            await self._dispatcher.program_code(lock, slot, values["code"])
            programmed = True

        try:
            async with self._guard.transaction(lock_id) as session:
                await get_lock(session, lock_id)
                now = self._clock()
                code = AccessCode(id=new_id(), lock_id=lock_id, created_at=now, updated_at=now, **values)
                session.add(code)
                await session.flush()
                await self._audit.append(
                    session,
                    lock_id,
                    ActivityAction.CODE_CREATED,
                    code_id=code.id,
                    code_name=code.name,
                    details={"actor": actor, "schedule_type": code.schedule_type.value},
                )
        except Exception:
            if programmed:
                try:
                    await self._dispatcher.clear_code(lock, slot)
                except ProviderError as e:
                    logger.error("Slot %d on lock %s holds an unrecorded code: %s", slot, lock_id, e)
            raise

        logger.info("Access code created: %s '%s' on lock %s", code.id, code.name, lock_id)
        return code

    async def get(self, code_id: str, lock_id: Optional[str] = None) -> AccessCode:
        async with get_session_context(self._guard.session_maker) as session:
            return await get_code(session, code_id, lock_id)

    async def list_for_lock(self, lock_id: str) -> list[AccessCode]:
        """Get a lock's codes, newest first."""
        async with get_session_context(self._guard.session_maker) as session:
            await get_lock(session, lock_id)
            return await list_codes(session, lock_id)

    async def update(
        self,
        code_id: str,
        changes: dict[str, Any],
        lock_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> AccessCode:
        """Apply a partial update (rename, reschedule, toggle active).

        Deactivating appends CODE_DISABLED. Any other change, re-enabling
        included, appends CODE_UPDATED. An update that changes nothing is not
        audited.
        """
        unknown = set(changes) - set(UPDATE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update access code fields: {sorted(unknown)}")
        for name in ("name", "is_active", "schedule_type"):
            if name in changes and changes[name] is None:
                raise ValidationError(f"{name} cannot be cleared")

        if lock_id is None:
            lock_id = (await self.get(code_id)).lock_id

        async with self._guard.transaction(lock_id) as session:
            code = await get_code(session, code_id, lock_id)

            merged = {name: getattr(code, name) for name in UPDATE_FIELDS}
            merged.update(changes)
            merged["name"] = _clean_name(merged["name"])
            merged["is_active"] = bool(merged["is_active"])
            _check_grantee(merged)
            merged = normalize_policy(merged)

            changed = sorted(
                name for name in UPDATE_FIELDS if _differs(getattr(code, name), merged[name])
            )
            if not changed:
                return code

            was_active = code.is_active
            for name in changed:
                setattr(code, name, merged[name])
            code.updated_at = self._clock()

            if was_active and not code.is_active:
                await self._audit.append(
                    session,
                    lock_id,
                    ActivityAction.CODE_DISABLED,
                    code_id=code.id,
                    code_name=code.name,
                    details={"actor": actor},
                )
            content = [name for name in changed if name != "is_active"]
            if content or (not was_active and code.is_active):
                await self._audit.append(
                    session,
                    lock_id,
                    ActivityAction.CODE_UPDATED,
                    code_id=code.id,
                    code_name=code.name,
                    details={
                        "actor": actor,
                        "changes": changed,
                        "reenabled": not was_active and code.is_active,
                    },
                )

        logger.info("Access code updated: %s fields=%s", code_id, changed)
        return code

    async def delete(
        self, code_id: str, lock_id: Optional[str] = None, actor: Optional[str] = None
    ) -> None:
        """Delete a code, clearing its keypad slot on the device first.

        If the deletion cannot be committed, the slot is programmed again.

        Raises:
            NotFoundError: if the code does not exist (or not on lock_id)
            ProviderError: if the device did not clear the slot; nothing is deleted
        """
        async with get_session_context(self._guard.session_maker) as session:
            code = await get_code(session, code_id, lock_id)
            lock = await get_lock(session, code.lock_id)

        slot, value = code.keypad_slot, code.code
        cleared = False
        if lock.is_tracked and slot is not None and value:
            await self._dispatcher.clear_code(lock, slot)
            cleared = True

        try:
            async with self._guard.transaction(lock.id) as session:
                code = await get_code(session, code_id, lock.id)
                await delete_code_in_session(session, self._audit, code, details={"actor": actor})
        except Exception:
            if cleared:
                try:
                    await self._dispatcher.program_code(lock, slot, value)
                except ProviderError as e:
                    logger.error("Slot %d on lock %s was cleared but its code is still stored: %s", slot, lock.id, e)
            raise

        logger.info("Access code deleted: %s from lock %s", code_id, lock.id)
