"""Tests for lock_manager.providers.event_listener: HA event translation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from lock_manager.providers import event_listener
from lock_manager.providers.event_listener import HAEventListener


def _listener():
    return HAEventListener(
        ha_url="https://ha.local:8123",
        ha_token="secret-token",
        on_keypad_unlock=AsyncMock(),
        on_state_changed=AsyncMock(),
    )


def _notification(event_code, **data):
    payload = {"command_class": 113, "type": 6, "event": event_code}
    payload.update(data)
    return {"event_type": "zwave_js_notification", "data": payload}


def _state_change(entity_id, old, new):
    return {
        "event_type": "state_changed",
        "data": {
            "entity_id": entity_id,
            "old_state": {"state": old} if old else None,
            "new_state": {"state": new} if new else None,
        },
    }


class TestZwaveNotifications:
    def test_websocket_url(self):
        assert _listener()._ws_url == "wss://ha.local:8123/api/websocket"

    @pytest.mark.asyncio
    async def test_keypad_unlock_is_forwarded(self):
        listener = _listener()
        event = _notification(6, entity_id="lock.front_door", parameters={"userId": 3})

        await listener.handle_event(event)

        listener._on_keypad_unlock.assert_awaited_once_with(
            entity_id="lock.front_door",
            code_slot=3,
            event_label="Keypad Unlock",
            raw=event["data"],
        )

    @pytest.mark.asyncio
    async def test_entity_is_resolved_from_device(self):
        listener = _listener()
        listener._device_to_entity = {"device-1": "lock.back_door"}

        await listener.handle_event(_notification(6, device_id="device-1", parameters={"userId": "2"}))

        kwargs = listener._on_keypad_unlock.await_args.kwargs
        assert kwargs["entity_id"] == "lock.back_door"
        assert kwargs["code_slot"] == 2

    @pytest.mark.asyncio
    async def test_unresolvable_entity_is_dropped(self):
        listener = _listener()

        await listener.handle_event(_notification(6, device_id="device-9", parameters={"userId": 2}))

        listener._on_keypad_unlock.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_code", [1, 2, 4, 5, 9])
    async def test_non_keypad_unlocks_are_ignored(self, event_code):
        listener = _listener()

        await listener.handle_event(
            _notification(event_code, entity_id="lock.front_door", parameters={"userId": 3})
        )

        listener._on_keypad_unlock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_keypad_unlock_without_slot_is_ignored(self):
        listener = _listener()

        await listener.handle_event(_notification(6, entity_id="lock.front_door"))

        listener._on_keypad_unlock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_notification_types_are_ignored(self):
        listener = _listener()
        event = _notification(6, entity_id="lock.front_door", parameters={"userId": 3})
        event["data"]["type"] = 7

        await listener.handle_event(event)

        listener._on_keypad_unlock.assert_not_awaited()


class TestStateChanges:
    @pytest.mark.asyncio
    async def test_lock_transition_is_forwarded(self):
        listener = _listener()

        await listener.handle_event(_state_change("lock.front_door", "locked", "unlocked"))

        listener._on_state_changed.assert_awaited_once_with(
            entity_id="lock.front_door", locked=False, available=True
        )

    @pytest.mark.asyncio
    async def test_unavailable_is_forwarded_as_unreachable(self):
        listener = _listener()

        await listener.handle_event(_state_change("lock.front_door", "locked", "unavailable"))

        listener._on_state_changed.assert_awaited_once_with(
            entity_id="lock.front_door", locked=None, available=False
        )

    @pytest.mark.asyncio
    async def test_unchanged_state_is_ignored(self):
        listener = _listener()

        await listener.handle_event(_state_change("lock.front_door", "locked", "locked"))

        listener._on_state_changed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_entities_are_ignored(self):
        listener = _listener()

        await listener.handle_event(_state_change("light.porch", "off", "on"))

        listener._on_state_changed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_removed_entity_is_ignored(self):
        listener = _listener()

        await listener.handle_event(_state_change("lock.front_door", "locked", None))

        listener._on_state_changed.assert_not_awaited()


class TestFailures:
    @pytest.mark.asyncio
    async def test_callback_error_does_not_escape(self):
        listener = _listener()
        listener._on_keypad_unlock.side_effect = RuntimeError("db locked")

        await listener.handle_event(
            _notification(6, entity_id="lock.front_door", parameters={"userId": 3})
        )
        await listener.handle_event(_state_change("lock.front_door", "locked", "unlocked"))

        listener._on_keypad_unlock.assert_awaited_once()
        listener._on_state_changed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_slot_is_dropped(self):
        listener = _listener()

        await listener.handle_event(
            _notification(6, entity_id="lock.front_door", parameters={"userId": "admin"})
        )

        listener._on_keypad_unlock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_reconnects(self, monkeypatch):
        monkeypatch.setattr(event_listener, "RECONNECT_MIN_SECONDS", 0)
        listener = _listener()
        attempts = []

        async def session():
            attempts.append(len(attempts))
            if len(attempts) == 1:
                raise RuntimeError("db locked")
            listener._stopping.set()

        listener._session = session

        await asyncio.wait_for(listener._run(), timeout=1)

        assert attempts == [0, 1]
