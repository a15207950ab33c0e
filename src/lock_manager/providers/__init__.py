"""Lock provider integrations."""

import logging

from lock_manager.config import BRIDGED_PROVIDERS, LockProvider, Settings
from lock_manager.providers.base import CommandOutcome, ProviderClient, ProviderStatus
from lock_manager.providers.home_assistant import HomeAssistantProvider

logger = logging.getLogger(__name__)

__all__ = [
    "CommandOutcome",
    "HomeAssistantProvider",
    "ProviderClient",
    "ProviderStatus",
    "build_provider_clients",
]


def build_provider_clients(settings: Settings) -> dict[LockProvider, ProviderClient]:
    """Map each provider to the client that reaches it.

    Manual locks never have a client. Without a Home Assistant bridge no
    provider is reachable and commands on bound locks are rejected.
    """
    if not settings.ha_url:
        logger.info("No Home Assistant bridge configured; provider-bound locks are unreachable")
        return {}

    bridge = HomeAssistantProvider(
        settings.ha_url, settings.ha_token, timeout=settings.provider_timeout_seconds
    )
    return {provider: bridge for provider in BRIDGED_PROVIDERS}
