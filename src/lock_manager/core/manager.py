"""Lock manager that wires the registry, code store, dispatcher and audit log."""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lock_manager.config import LockProvider, Settings
from lock_manager.core.access_codes import AccessCodeStore
from lock_manager.core.audit import AuditLog
from lock_manager.core.dispatcher import CommandDispatcher
from lock_manager.core.exceptions import LockManagerError
from lock_manager.core.guard import LockGuard
from lock_manager.core.locks import LockRegistry
from lock_manager.core.schedule import as_utc, is_valid_at, resolve_timezone, utcnow
from lock_manager.db.database import async_session_maker, get_session_context
from lock_manager.db.models import AccessCode, ActivityEntry, ActivityMethod
from lock_manager.db.queries import get_code_by_slot
from lock_manager.providers import HomeAssistantProvider, ProviderClient, build_provider_clients
from lock_manager.providers.event_listener import HAEventListener
from lock_manager.scheduler.poller import StatusPoller

logger = logging.getLogger(__name__)


class LockManager:
    """Main lock manager coordinating all components."""

    def __init__(
        self,
        settings: Settings,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        providers: Optional[dict[LockProvider, ProviderClient]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self._clock = clock
        self._session_maker = session_maker or async_session_maker
        self._providers = build_provider_clients(settings) if providers is None else providers

        self.guard = LockGuard(self._session_maker)
        self.audit = AuditLog(
            self._session_maker,
            clock=clock,
            default_limit=settings.activity_default_limit,
            max_limit=settings.activity_max_limit,
        )
        self.registry = LockRegistry(self.guard, self.audit, clock=clock)
        self.dispatcher = CommandDispatcher(
            self.guard,
            self.audit,
            self.registry,
            self._providers,
            timeout_seconds=settings.provider_timeout_seconds,
            household_timezone=settings.household_timezone,
            clock=clock,
        )
        self.registry.attach_dispatcher(self.dispatcher)
        self.codes = AccessCodeStore(self.guard, self.audit, self.dispatcher, clock=clock)

        self._poller = StatusPoller(
            list_lock_ids=self._tracked_lock_ids,
            refresh=self.dispatcher.refresh_status,
            interval_seconds=settings.status_poll_interval,
        )
        self._event_listener: Optional[HAEventListener] = None
        if settings.listen_for_events and settings.ha_url:
            self._event_listener = HAEventListener(
                ha_url=settings.ha_url,
                ha_token=settings.ha_token,
                on_keypad_unlock=self.record_keypad_unlock,
                on_state_changed=self._on_state_changed,
            )
        self._running = False

    async def start(self) -> None:
        """Start background polling and event listening."""
        if self._running:
            return
        self._running = True
        self._poller.start()
        if self._event_listener:
            await self._event_listener.start()
        logger.info("Lock manager started")

    async def stop(self) -> None:
        """Stop the manager."""
        self._running = False
        self._poller.stop()
        if self._event_listener:
            await self._event_listener.stop()
        for client in set(self._providers.values()):
            await client.close()
        logger.info("Lock manager stopped")

    async def _tracked_lock_ids(self) -> list[str]:
        return [lock.id for lock in await self.registry.list_tracked()]

    async def codes_valid_at(
        self, lock_id: str, at: Optional[datetime] = None
    ) -> list[tuple[AccessCode, bool]]:
        """Pair each of a lock's codes with its validity at an instant."""
        lock = await self.registry.get(lock_id)
        codes = await self.codes.list_for_lock(lock_id)
        tz = resolve_timezone(lock.timezone, self.settings.household_timezone)
        at = as_utc(at or self._clock())
        return [(code, is_valid_at(code, at, tz)) for code in codes]

    # Provider events

    async def record_keypad_unlock(
        self,
        entity_id: str,
        code_slot: int,
        event_label: str = "Keypad Unlock",
        raw: Optional[dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> Optional[ActivityEntry]:
        """Record a keypad unlock reported by the provider.

        Args:
            entity_id: Provider entity of the lock
            code_slot: Keypad slot the provider says was used
            event_label: Provider label for the event
            raw: Raw provider payload, kept in the entry metadata
            at: When the code was entered (defaults to now)

        Returns:
            The CODE_USED entry, or None if the event could not be recorded
        """
        lock = await self.registry.find_by_external_id(entity_id)
        if lock is None:
            logger.warning("Keypad event for unknown lock: %s", entity_id)
            return None

        async with get_session_context(self._session_maker) as session:
            code = await get_code_by_slot(session, lock.id, code_slot)

        try:
            return await self.dispatcher.report_code_used(
                lock.id,
                code.id if code else None,
                at=at,
                provider_unlocked=True,
                method=ActivityMethod.KEYPAD,
                details={"slot": code_slot, "event": event_label, "raw": raw},
            )
        except LockManagerError as e:
            logger.error("Failed to record keypad event on %s slot %s: %s", entity_id, code_slot, e)
            return None

    async def _on_state_changed(
        self, entity_id: str, locked: Optional[bool], available: bool = True
    ) -> None:
        """Mirror a provider-side state change into the lock's status."""
        lock = await self.registry.find_by_external_id(entity_id)
        if lock is None or not lock.is_tracked:
            return

        changes: dict[str, Any] = {"connected": available}
        if available:
            changes["last_sync_at"] = self._clock()
            if locked is not None:
                changes["currently_locked"] = locked
        try:
            await self.registry.update_status(lock.id, **changes)
        except LockManagerError as e:
            logger.error("Failed to sync state of %s: %s", entity_id, e)

    async def health_check(self) -> dict:
        """Perform a health check on all components."""
        bridges = {
            client for client in self._providers.values()
            if isinstance(client, HomeAssistantProvider)
        }
        return {
            "running": self._running,
            "status_poller_running": self._poller.running,
            "event_listener": self._event_listener is not None,
            "home_assistant": [await bridge.health_check() for bridge in bridges],
            "pending_commands": [
                {
                    "command_id": c.command_id,
                    "lock_id": c.lock_id,
                    "action": c.action,
                    "issued_at": c.issued_at.isoformat(),
                }
                for c in self.dispatcher.pending_commands()
            ],
        }
