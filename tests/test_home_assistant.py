"""Tests for lock_manager.providers.home_assistant: the HA REST bridge."""

import json

import httpx
import pytest

from lock_manager.config import BRIDGED_PROVIDERS, LockProvider, Settings
from lock_manager.providers import build_provider_clients
from lock_manager.providers.base import CommandOutcome, ProviderStatus
from lock_manager.providers.home_assistant import HomeAssistantProvider


def _provider(handler):
    return HomeAssistantProvider(
        "http://ha.local:8123/", "secret-token", transport=httpx.MockTransport(handler)
    )


class TestServiceCalls:
    @pytest.mark.asyncio
    async def test_unlock_acknowledged(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        provider = _provider(handler)
        assert await provider.unlock("lock.front_door") == CommandOutcome.ACKNOWLEDGED
        await provider.close()

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/services/lock/unlock"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert json.loads(request.content) == {"entity_id": "lock.front_door"}

    @pytest.mark.asyncio
    async def test_lock_uses_lock_service(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json=[])

        provider = _provider(handler)
        await provider.lock("lock.front_door")
        await provider.close()

        assert paths == ["/api/services/lock/lock"]

    @pytest.mark.asyncio
    async def test_error_status_is_rejected(self):
        provider = _provider(lambda request: httpx.Response(500, text="boom"))
        assert await provider.unlock("lock.front_door") == CommandOutcome.REJECTED
        await provider.close()

    @pytest.mark.asyncio
    async def test_connection_error_is_rejected(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)
        assert await provider.lock("lock.front_door") == CommandOutcome.REJECTED
        await provider.close()

    @pytest.mark.asyncio
    async def test_timeout_is_timed_out(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = _provider(handler)
        assert await provider.unlock("lock.front_door") == CommandOutcome.TIMED_OUT
        await provider.close()

    @pytest.mark.asyncio
    async def test_set_and_clear_code(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json=[])

        provider = _provider(handler)
        assert await provider.set_code("lock.front_door", 4, "482913") == CommandOutcome.ACKNOWLEDGED
        assert await provider.clear_code("lock.front_door", 4) == CommandOutcome.ACKNOWLEDGED
        await provider.close()

        assert seen == [
            (
                "/api/services/zwave_js/set_lock_usercode",
                {"entity_id": "lock.front_door", "code_slot": 4, "usercode": "482913"},
            ),
            (
                "/api/services/zwave_js/clear_lock_usercode",
                {"entity_id": "lock.front_door", "code_slot": 4},
            ),
        ]


class TestStatus:
    @pytest.mark.asyncio
    async def test_locked_state(self):
        def handler(request):
            assert request.url.path == "/api/states/lock.front_door"
            return httpx.Response(
                200,
                json={"state": "locked", "attributes": {"battery_level": 87}},
            )

        provider = _provider(handler)
        status = await provider.status("lock.front_door")
        await provider.close()

        assert status == ProviderStatus(connected=True, battery_percent=87, currently_locked=True)

    @pytest.mark.asyncio
    async def test_jammed_state_is_not_coerced(self):
        provider = _provider(
            lambda request: httpx.Response(200, json={"state": "jammed", "attributes": {}})
        )
        status = await provider.status("lock.front_door")
        await provider.close()

        assert status.connected is True
        assert status.currently_locked is None
        assert status.battery_percent is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["unavailable", "unknown"])
    async def test_unavailable_device_is_unreachable(self, state):
        provider = _provider(lambda request: httpx.Response(200, json={"state": state}))
        assert await provider.status("lock.front_door") is None
        await provider.close()

    @pytest.mark.asyncio
    async def test_missing_entity_is_unreachable(self):
        provider = _provider(lambda request: httpx.Response(404, json={"message": "Entity not found."}))
        assert await provider.status("lock.front_door") is None
        await provider.close()


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_reachable(self):
        provider = _provider(lambda request: httpx.Response(200, json={"message": "API running."}))
        assert await provider.health_check() is True
        await provider.close()

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)
        assert await provider.health_check() is False
        await provider.close()


class TestBuildProviderClients:
    def test_no_bridge_configured(self):
        assert build_provider_clients(Settings(ha_url="")) == {}

    def test_bridge_serves_every_bound_provider(self):
        clients = build_provider_clients(Settings(ha_url="http://ha.local:8123", ha_token="t"))

        assert set(clients) == set(BRIDGED_PROVIDERS)
        assert LockProvider.MANUAL not in clients
        assert len({id(c) for c in clients.values()}) == 1
        assert isinstance(clients[LockProvider.AUGUST], HomeAssistantProvider)
