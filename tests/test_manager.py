"""Tests for lock_manager.core.manager: wiring and provider event handling."""

from unittest.mock import AsyncMock, patch

import pytest

from lock_manager.config import Settings
from lock_manager.core.manager import LockManager
from lock_manager.db.models import ActivityAction, ActivityMethod


class TestKeypadEvents:
    @pytest.mark.asyncio
    async def test_known_slot_is_recorded(self, manager, bound_lock):
        code = await manager.codes.create(
            bound_lock.id, {"name": "Cleaner", "code": "482913", "keypad_slot": 3}
        )

        entry = await manager.record_keypad_unlock("lock.front_door", 3, raw={"userId": 3})

        assert entry.action == ActivityAction.CODE_USED
        assert entry.method == ActivityMethod.KEYPAD
        assert entry.code_id == code.id
        assert entry.code_name_snapshot == "Cleaner"
        assert entry.details["slot"] == 3
        assert entry.details["raw"] == {"userId": 3}
        assert entry.details["anomalous"] is False

    @pytest.mark.asyncio
    async def test_unknown_slot_is_flagged(self, manager, bound_lock):
        entry = await manager.record_keypad_unlock("lock.front_door", 9)

        assert entry.code_id is None
        assert entry.details["anomalous"] is True

    @pytest.mark.asyncio
    async def test_unknown_entity_is_dropped(self, manager):
        assert await manager.record_keypad_unlock("lock.nowhere", 3) is None


class TestStateEvents:
    @pytest.mark.asyncio
    async def test_state_change_updates_status(self, manager, bound_lock):
        await manager._on_state_changed("lock.front_door", locked=False)

        lock = await manager.registry.get(bound_lock.id)
        assert lock.currently_locked is False
        assert lock.connected is True
        assert lock.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_unavailable_disconnects(self, manager, bound_lock):
        await manager._on_state_changed("lock.front_door", locked=True)
        await manager._on_state_changed("lock.front_door", locked=None, available=False)

        lock = await manager.registry.get(bound_lock.id)
        assert lock.connected is False
        assert lock.currently_locked is True

    @pytest.mark.asyncio
    async def test_state_changes_are_not_audited(self, manager, bound_lock):
        await manager._on_state_changed("lock.front_door", locked=False)

        page = await manager.audit.read(bound_lock.id)
        assert [e.action for e in page.entries] == [ActivityAction.ADDED]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_listener_only_with_bridge(self, session_maker):
        without = LockManager(Settings(listen_for_events=True, ha_url=""), session_maker=session_maker)
        with_bridge = LockManager(
            Settings(listen_for_events=True, ha_url="http://ha.local:8123", ha_token="t"),
            session_maker=session_maker,
        )

        assert without._event_listener is None
        assert with_bridge._event_listener is not None
        await with_bridge.stop()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager):
        await manager.start()
        health = await manager.health_check()
        assert health["running"] is True
        # Polling is disabled in the test settings
        assert health["status_poller_running"] is False
        assert health["pending_commands"] == []

        await manager.stop()
        assert (await manager.health_check())["running"] is False

    @pytest.mark.asyncio
    async def test_stop_closes_bridge_once(self, session_maker):
        manager = LockManager(
            Settings(ha_url="http://ha.local:8123", ha_token="t", status_poll_interval=0),
            session_maker=session_maker,
        )
        bridge = next(iter(manager._providers.values()))

        with patch.object(bridge, "close", AsyncMock()) as close:
            await manager.stop()

        close.assert_awaited_once()
