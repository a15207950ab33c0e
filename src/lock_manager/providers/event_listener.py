"""Home Assistant websocket listener for keypad and lock state events.

Z-Wave JS access control notifications that name a user slot become keypad
reports; lock entity state transitions become status updates.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import websockets

logger = logging.getLogger(__name__)

NOTIFICATION_CC = 113
ACCESS_CONTROL = 6

# Access control event code -> (label, opened by keypad credential)
KEYPAD_EVENTS: dict[int, tuple[str, bool]] = {
    1: ("Manual Lock", False),
    2: ("Manual Unlock", False),
    3: ("RF Lock", False),
    4: ("RF Unlock", False),
    5: ("Keypad Lock", False),
    6: ("Keypad Unlock", True),
    9: ("Auto Lock", False),
    11: ("Keypad Lock (limited)", False),
    12: ("Keypad Unlock (limited)", True),
}

LOCK_STATES = {"locked": True, "unlocked": False}
UNAVAILABLE_STATES = ("unavailable", "unknown")

RECONNECT_MIN_SECONDS = 5
RECONNECT_MAX_SECONDS = 300


@dataclass
class KeypadUnlock:
    entity_id: str
    code_slot: int
    label: str
    raw: dict[str, Any]


@dataclass
class LockStateChange:
    entity_id: str
    locked: Optional[bool]
    available: bool


def parse_keypad_unlock(
    data: dict[str, Any], device_to_entity: dict[str, str]
) -> Optional[KeypadUnlock]:
    """Turn a zwave_js_notification payload into a keypad unlock, if it is one."""
    if data.get("command_class") == NOTIFICATION_CC and data.get("type") != ACCESS_CONTROL:
        return None
    if data.get("command_class") not in (ACCESS_CONTROL, NOTIFICATION_CC):
        return None

    label, by_keypad = KEYPAD_EVENTS.get(data.get("event"), ("", False))
    slot = (data.get("parameters") or {}).get("userId")
    if not by_keypad or slot is None:
        return None

    entity_id = data.get("entity_id") or device_to_entity.get(data.get("device_id") or "")
    if not entity_id:
        logger.warning(
            "Keypad unlock from unmapped device (node=%s device=%s)",
            data.get("node_id"), data.get("device_id"),
        )
        return None
    return KeypadUnlock(entity_id=entity_id, code_slot=int(slot), label=label, raw=data)


def parse_state_change(data: dict[str, Any]) -> Optional[LockStateChange]:
    """Turn a state_changed payload for a lock entity into a status change."""
    entity_id = data.get("entity_id") or ""
    if not entity_id.startswith("lock."):
        return None

    before = (data.get("old_state") or {}).get("state")
    after = (data.get("new_state") or {}).get("state")
    if after is None or after == before:
        return None
    return LockStateChange(
        entity_id=entity_id,
        locked=LOCK_STATES.get(after),
        available=after not in UNAVAILABLE_STATES,
    )


class HAEventListener:
    """Keeps a websocket subscription to Home Assistant open.

    Reconnects with exponential backoff until stopped.
    """

    def __init__(
        self,
        ha_url: str,
        ha_token: str,
        on_keypad_unlock: Callable[..., Awaitable[Any]],
        on_state_changed: Callable[..., Awaitable[Any]],
    ):
        base = ha_url.rstrip("/")
        for scheme, ws_scheme in (("https://", "wss://"), ("http://", "ws://")):
            if base.startswith(scheme):
                base = ws_scheme + base[len(scheme):]
                break
        self._ws_url = f"{base}/api/websocket"
        self._token = ha_token
        self._on_keypad_unlock = on_keypad_unlock
        self._on_state_changed = on_state_changed
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._request_id = 0
        self._device_to_entity: dict[str, str] = {}

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("HA event listener started")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("HA event listener stopped")

    async def _run(self) -> None:
        delay = RECONNECT_MIN_SECONDS
        while not self._stopping.is_set():
            try:
                await self._session()
                delay = RECONNECT_MIN_SECONDS
            except (OSError, websockets.WebSocketException, json.JSONDecodeError) as e:
                logger.warning("HA websocket lost (%s); retrying in %ds", e, delay)
            except Exception:
                logger.exception("HA event listener failed; reconnecting in %ds", delay)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                delay = min(delay * 2, RECONNECT_MAX_SECONDS)

    async def _request(self, ws, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a command and wait for its result, handling events that arrive meanwhile."""
        self._request_id += 1
        request_id = self._request_id
        await ws.send(json.dumps({"id": request_id, **payload}))
        while True:
            message = json.loads(await ws.recv())
            if message.get("type") == "event":
                await self.handle_event(message.get("event") or {})
            elif message.get("id") == request_id:
                return message

    async def _authenticate(self, ws) -> bool:
        greeting = json.loads(await ws.recv())
        if greeting.get("type") != "auth_required":
            logger.error("Unexpected HA greeting: %s", greeting)
            return False
        await ws.send(json.dumps({"type": "auth", "access_token": self._token}))
        reply = json.loads(await ws.recv())
        if reply.get("type") != "auth_ok":
            logger.error("HA rejected the access token: %s", reply.get("message"))
            return False
        return True

    async def _session(self) -> None:
        """One connection: authenticate, map devices, subscribe, then read events."""
        logger.info("Connecting to %s", self._ws_url)
        async with websockets.connect(self._ws_url, ping_interval=30, ping_timeout=10) as ws:
            if not await self._authenticate(ws):
                return

            registry = await self._request(ws, {"type": "config/entity_registry/list"})
            self._device_to_entity = {
                entry["device_id"]: entry["entity_id"]
                for entry in registry.get("result") or []
                if entry.get("device_id") and str(entry.get("entity_id", "")).startswith("lock.")
            }
            logger.info("Mapped %d lock devices", len(self._device_to_entity))

            for event_type in ("zwave_js_notification", "state_changed"):
                result = await self._request(ws, {"type": "subscribe_events", "event_type": event_type})
                if not result.get("success"):
                    logger.error("Subscription to %s refused: %s", event_type, result.get("error"))
                    return

            async for raw in ws:
                if self._stopping.is_set():
                    return
                message = json.loads(raw)
                if message.get("type") == "event":
                    await self.handle_event(message.get("event") or {})

    async def handle_event(self, event: dict[str, Any]) -> None:
        """Route one HA event to the matching callback.

        A failing event is logged and dropped; the subscription stays open.
        """
        try:
            await self._dispatch(event)
        except Exception:
            logger.exception("Error processing HA %s event", event.get("event_type"))

    async def _dispatch(self, event: dict[str, Any]) -> None:
        data = event.get("data") or {}
        kind = event.get("event_type")

        if kind == "zwave_js_notification":
            unlock = parse_keypad_unlock(data, self._device_to_entity)
            if unlock is None:
                return
            logger.info("Keypad unlock on %s slot %d", unlock.entity_id, unlock.code_slot)
            await self._on_keypad_unlock(
                entity_id=unlock.entity_id,
                code_slot=unlock.code_slot,
                event_label=unlock.label,
                raw=unlock.raw,
            )

        elif kind == "state_changed":
            change = parse_state_change(data)
            if change is None:
                return
            logger.debug("Lock %s is now locked=%s", change.entity_id, change.locked)
            await self._on_state_changed(
                entity_id=change.entity_id,
                locked=change.locked,
                available=change.available,
            )
