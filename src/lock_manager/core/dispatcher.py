"""Command dispatch: lock/unlock requests, keypad reports and status sync."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from lock_manager.config import LockProvider
from lock_manager.core.audit import AuditLog
from lock_manager.core.exceptions import (
    ProviderRejectedError,
    ProviderTimeoutError,
    ValidationError,
)
from lock_manager.core.guard import LockGuard
from lock_manager.core.locks import LockRegistry
from lock_manager.core.schedule import as_utc, is_valid_at, resolve_timezone, utcnow
from lock_manager.db.models import (
    AccessCode,
    ActivityAction,
    ActivityEntry,
    ActivityMethod,
    Lock,
)
from lock_manager.db.queries import get_lock
from lock_manager.providers.base import CommandOutcome, ProviderClient

logger = logging.getLogger(__name__)

UNKNOWN_STATE = "physical state unknown, please verify at the door"


class CommandAction(str, Enum):
    """Commands a caller can send to a lock."""

    LOCK = "LOCK"
    UNLOCK = "UNLOCK"


@dataclass
class PendingCommand:
    """A command that has been sent to a provider."""

    command_id: str
    lock_id: str
    action: str
    state: CommandOutcome = CommandOutcome.PENDING
    issued_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


@dataclass
class CommandResult:
    """Confirmed outcome of a lock/unlock command."""

    command_id: str
    lock: Lock
    state: CommandOutcome
    entry: ActivityEntry


class CommandDispatcher:
    """Sends lock commands to providers and reconciles local state.

    Local state only changes after a provider acknowledgement (or, for
    manually tracked locks, on the operator's request). Failed commands are
    never retried and never audited.
    """

    def __init__(
        self,
        guard: LockGuard,
        audit: AuditLog,
        registry: LockRegistry,
        providers: dict[LockProvider, ProviderClient],
        timeout_seconds: float = 10.0,
        household_timezone: str = "UTC",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._guard = guard
        self._audit = audit
        self._registry = registry
        self._providers = providers
        self._timeout = timeout_seconds
        self._household_timezone = household_timezone
        self._clock = clock

        # In-flight commands: {command_id: PendingCommand}
        self._in_flight: dict[str, PendingCommand] = {}

    def client_for(self, lock: Lock) -> ProviderClient:
        client = self._providers.get(lock.provider)
        if client is None:
            raise ProviderRejectedError(
                lock.id, "CONNECT", f"no client configured for provider {lock.provider.value}"
            )
        return client

    def pending_commands(self) -> list[PendingCommand]:
        """Get commands still waiting for a provider answer."""
        return list(self._in_flight.values())

    async def _call(self, request: Awaitable[CommandOutcome]) -> CommandOutcome:
        """Await a provider call under the hard command timeout."""
        try:
            return await asyncio.wait_for(request, timeout=self._timeout)
        except asyncio.TimeoutError:
            return CommandOutcome.TIMED_OUT

    @staticmethod
    def _raise_for(outcome: CommandOutcome, lock_id: str, action: str) -> None:
        if outcome == CommandOutcome.TIMED_OUT:
            raise ProviderTimeoutError(lock_id, action, UNKNOWN_STATE)
        if outcome != CommandOutcome.ACKNOWLEDGED:
            raise ProviderRejectedError(lock_id, action, "provider refused the command")

    # Lock/unlock

    async def lock(self, lock_id: str, actor: Optional[str] = None) -> CommandResult:
        return await self._dispatch(lock_id, CommandAction.LOCK, actor)

    async def unlock(self, lock_id: str, actor: Optional[str] = None) -> CommandResult:
        return await self._dispatch(lock_id, CommandAction.UNLOCK, actor)

    async def _dispatch(
        self, lock_id: str, action: CommandAction, actor: Optional[str]
    ) -> CommandResult:
        """Send a command and apply the confirmed outcome.

        The per-lock mutex is held only to read the lock and to apply the
        acknowledged result, never across the provider round-trip.

        Raises:
            NotFoundError: if the lock does not exist
            ProviderTimeoutError: no answer in time; physical state unknown
            ProviderRejectedError: provider refused; physical state unchanged
        """
        async with self._guard.read(lock_id) as session:
            lock = await get_lock(session, lock_id)

        command = PendingCommand(
            command_id=uuid.uuid4().hex, lock_id=lock_id, action=action.value
        )

        if not lock.is_tracked:
            # The operator's click is the ground truth for untracked locks
            command.state = CommandOutcome.ACKNOWLEDGED
            return await self._apply(
                command, ActivityMethod.MANUAL, {"actor": actor, "tracking": "manual"}
            )

        client = self.client_for(lock)
        request = client.lock if action == CommandAction.LOCK else client.unlock

        self._in_flight[command.command_id] = command
        try:
            command.state = await self._call(request(lock.external_id))
        finally:
            command.resolved_at = self._clock()
            self._in_flight.pop(command.command_id, None)

        if command.state != CommandOutcome.ACKNOWLEDGED:
            logger.warning(
                "%s on lock %s (%s) not confirmed: %s",
                action.value, lock_id, lock.external_id, command.state.value,
            )
            self._raise_for(command.state, lock_id, action.value)

        return await self._apply(
            command,
            ActivityMethod.APP,
            {"actor": actor, "provider": lock.provider.value, "command_id": command.command_id},
        )

    async def _apply(
        self, command: PendingCommand, method: ActivityMethod, details: dict[str, Any]
    ) -> CommandResult:
        action = CommandAction(command.action)
        async with self._guard.transaction(command.lock_id) as session:
            lock = await get_lock(session, command.lock_id)
            changes: dict[str, Any] = {"currently_locked": action == CommandAction.LOCK}
            if lock.is_tracked:
                changes.update(connected=True, last_sync_at=self._clock())
            self._registry.apply_status(lock, changes)
            entry = await self._audit.append(
                session,
                lock.id,
                ActivityAction(action.value),
                method=method,
                details=details,
            )

        logger.info("Lock %s %s confirmed (seq %d)", lock.id, action.value, entry.sequence)
        return CommandResult(
            command_id=command.command_id, lock=lock, state=command.state, entry=entry
        )

    # Keypad reports

    async def report_code_used(
        self,
        lock_id: str,
        code_id: Optional[str],
        at: Optional[datetime] = None,
        provider_unlocked: bool = True,
        method: ActivityMethod = ActivityMethod.KEYPAD,
        details: Optional[dict[str, Any]] = None,
    ) -> ActivityEntry:
        """Record a keypad entry reported by the provider or an operator.

        CODE_USED is always appended. The entry is flagged anomalous when the
        schedule evaluator disagrees with the provider's decision to unlock,
        including reports for codes that no longer exist.
        """
        at = as_utc(at or self._clock())

        async with self._guard.transaction(lock_id) as session:
            lock = await get_lock(session, lock_id)
            code = await session.get(AccessCode, code_id) if code_id else None
            if code is not None and code.lock_id != lock_id:
                code = None

            tz = resolve_timezone(lock.timezone, self._household_timezone)
            valid = code is not None and is_valid_at(code, at, tz)
            anomalous = valid != provider_unlocked

            metadata: dict[str, Any] = dict(details or {})
            metadata.update(
                reported_at=at.isoformat(),
                provider_unlocked=provider_unlocked,
                evaluator_valid=valid,
                anomalous=anomalous,
            )
            if code is None and code_id:
                metadata["unknown_code_id"] = code_id

            if provider_unlocked:
                self._registry.apply_status(lock, {"currently_locked": False})

            entry = await self._audit.append(
                session,
                lock_id,
                ActivityAction.CODE_USED,
                method=method,
                code_id=code.id if code else None,
                code_name=code.name if code else None,
                details=metadata,
            )

        if anomalous:
            logger.warning(
                "Anomalous code use on lock %s: code=%s valid=%s unlocked=%s",
                lock_id, code_id, valid, provider_unlocked,
            )
        return entry

    # Status and keypad sync

    async def refresh_status(self, lock_id: str) -> Lock:
        """Pull device status from the provider and store it.

        An unreachable device marks the lock disconnected; other fields keep
        their last known values.
        """
        async with self._guard.read(lock_id) as session:
            lock = await get_lock(session, lock_id)
        if not lock.is_tracked:
            raise ValidationError(f"Lock {lock_id} is manually tracked and has no provider status")

        client = self.client_for(lock)
        try:
            status = await asyncio.wait_for(client.status(lock.external_id), timeout=self._timeout)
        except asyncio.TimeoutError:
            status = None

        changes: dict[str, Any] = {"connected": False}
        if status is not None:
            changes = {"connected": status.connected, "last_sync_at": self._clock()}
            if status.battery_percent is not None:
                changes["battery_percent"] = max(0, min(100, status.battery_percent))
            if status.currently_locked is not None:
                changes["currently_locked"] = status.currently_locked
        else:
            logger.warning("Lock %s (%s) unreachable", lock_id, lock.external_id)

        async with self._guard.transaction(lock_id) as session:
            lock = await get_lock(session, lock_id)
            self._registry.apply_status(lock, changes)
        return lock

    async def program_code(self, lock: Lock, slot: int, code: str) -> None:
        """Write a keypad code into a device slot."""
        outcome = await self._call(self.client_for(lock).set_code(lock.external_id, slot, code))
        if outcome != CommandOutcome.ACKNOWLEDGED:
            logger.warning("Setting slot %d on lock %s not confirmed: %s", slot, lock.id, outcome.value)
        self._raise_for(outcome, lock.id, "SET_CODE")

    async def clear_code(self, lock: Lock, slot: int) -> None:
        """Clear a keypad slot on the device."""
        outcome = await self._call(self.client_for(lock).clear_code(lock.external_id, slot))
        if outcome != CommandOutcome.ACKNOWLEDGED:
            logger.warning("Clearing slot %d on lock %s not confirmed: %s", slot, lock.id, outcome.value)
        self._raise_for(outcome, lock.id, "CLEAR_CODE")
