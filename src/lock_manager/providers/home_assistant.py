"""Home Assistant bridge for provider-bound locks.

August, Schlage, Yale and Level locks are reached through their Home
Assistant integrations; the lock's external id is its HA entity id.
"""

import logging
from typing import Any, Optional

import httpx

from lock_manager.providers.base import CommandOutcome, ProviderClient, ProviderStatus

logger = logging.getLogger(__name__)

UNREACHABLE_STATES = ("unavailable", "unknown")
LOCK_STATES = {"locked": True, "unlocked": False}


def status_from_state(state: dict[str, Any]) -> Optional[ProviderStatus]:
    """Build a ProviderStatus from an HA state object; None if the device is offline.

    Transitional states (locking, jammed, open) leave currently_locked unset.
    """
    value = state.get("state", "unknown")
    if value in UNREACHABLE_STATES:
        return None
    battery = (state.get("attributes") or {}).get("battery_level")
    return ProviderStatus(
        connected=True,
        battery_percent=None if battery is None else int(battery),
        currently_locked=LOCK_STATES.get(value),
    )


class HomeAssistantProvider(ProviderClient):
    """Drives locks through the Home Assistant REST API."""

    name = "home_assistant"

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Base URL of the Home Assistant instance
            token: Long-lived access token
            timeout: Per-request timeout in seconds
            transport: httpx transport override
        """
        self.url = url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def _service(self, domain: str, service: str, **data: Any) -> CommandOutcome:
        """POST a service call; a 2xx answer means HA accepted it."""
        entity_id = data.get("entity_id")
        try:
            response = await self._http.post(f"/api/services/{domain}/{service}", json=data)
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning("%s.%s on %s: no answer from HA", domain, service, entity_id)
            return CommandOutcome.TIMED_OUT
        except httpx.HTTPStatusError as e:
            logger.warning(
                "%s.%s on %s refused with HTTP %d",
                domain, service, entity_id, e.response.status_code,
            )
            return CommandOutcome.REJECTED
        except httpx.HTTPError as e:
            logger.warning("%s.%s on %s failed: %s", domain, service, entity_id, e)
            return CommandOutcome.REJECTED
        return CommandOutcome.ACKNOWLEDGED

    async def lock(self, external_id: str) -> CommandOutcome:
        return await self._service("lock", "lock", entity_id=external_id)

    async def unlock(self, external_id: str) -> CommandOutcome:
        return await self._service("lock", "unlock", entity_id=external_id)

    async def status(self, external_id: str) -> Optional[ProviderStatus]:
        try:
            response = await self._http.get(f"/api/states/{external_id}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Cannot read state of %s: %s", external_id, e)
            return None
        return status_from_state(response.json())

    # Keypad slots are managed through Z-Wave JS

    async def set_code(self, external_id: str, slot: int, code: str) -> CommandOutcome:
        return await self._service(
            "zwave_js", "set_lock_usercode", entity_id=external_id, code_slot=slot, usercode=code
        )

    async def clear_code(self, external_id: str, slot: int) -> CommandOutcome:
        return await self._service(
            "zwave_js", "clear_lock_usercode", entity_id=external_id, code_slot=slot
        )

    async def health_check(self) -> bool:
        try:
            response = await self._http.get("/api/")
        except httpx.HTTPError:
            return False
        return response.status_code == 200
