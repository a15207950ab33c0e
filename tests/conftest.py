"""Shared test fixtures.

Every test gets its own SQLite file and a fake provider client standing in
for the Home Assistant bridge.
"""

import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from lock_manager.config import BRIDGED_PROVIDERS, LockProvider, Settings
from lock_manager.core.manager import LockManager
from lock_manager.db.database import create_engine, create_session_maker, init_db
from lock_manager.providers.base import CommandOutcome, ProviderClient, ProviderStatus


class FakeProvider(ProviderClient):
    """Provider client whose answers and latency are set by the test."""

    name = "fake"

    def __init__(self):
        self.outcome = CommandOutcome.ACKNOWLEDGED
        self.code_outcome = CommandOutcome.ACKNOWLEDGED
        self.delay = 0.0
        self.device_status: Optional[ProviderStatus] = ProviderStatus(
            connected=True, battery_percent=80, currently_locked=True
        )
        self.calls: list[tuple] = []

    async def _answer(self, call: tuple, outcome):
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        return outcome

    async def lock(self, external_id: str) -> CommandOutcome:
        return await self._answer(("lock", external_id), self.outcome)

    async def unlock(self, external_id: str) -> CommandOutcome:
        return await self._answer(("unlock", external_id), self.outcome)

    async def status(self, external_id: str) -> Optional[ProviderStatus]:
        return await self._answer(("status", external_id), self.device_status)

    async def set_code(self, external_id: str, slot: int, code: str) -> CommandOutcome:
        return await self._answer(("set_code", external_id, slot, code), self.code_outcome)

    async def clear_code(self, external_id: str, slot: int) -> CommandOutcome:
        return await self._answer(("clear_code", external_id, slot), self.code_outcome)


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        provider_timeout_seconds=0.2,
        household_timezone="UTC",
        status_poll_interval=0,
        activity_default_limit=50,
        activity_max_limit=200,
        ha_url="",
        listen_for_events=False,
    )


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Session maker backed by a temporary SQLite file."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'locks.db'}")
    await init_db(engine)
    yield create_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def manager(test_settings, session_maker, provider):
    manager = LockManager(
        test_settings,
        session_maker=session_maker,
        providers={p: provider for p in BRIDGED_PROVIDERS},
    )
    yield manager
    await manager.stop()


@pytest_asyncio.fixture
async def manual_lock(manager):
    """A lock with no device binding."""
    return await manager.registry.register(
        household_id="house-1", name="Shed", provider=LockProvider.MANUAL
    )


@pytest_asyncio.fixture
async def bound_lock(manager):
    """A lock bound to a provider device."""
    return await manager.registry.register(
        household_id="house-1",
        name="Front Door",
        provider=LockProvider.AUGUST,
        external_id="lock.front_door",
    )
