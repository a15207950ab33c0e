"""Provider client contract shared by all lock integrations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CommandOutcome(str, Enum):
    """Final state of a provider command."""

    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    TIMED_OUT = "TIMED_OUT"
    REJECTED = "REJECTED"


@dataclass
class ProviderStatus:
    """Status reported by a provider for one device."""

    connected: bool
    battery_percent: Optional[int] = None
    currently_locked: Optional[bool] = None


class ProviderClient(ABC):
    """Black-box command sink for one family of locks.

    Implementations translate transport failures into outcomes rather than
    raising, so the dispatcher can tell a refusal from an unknown result.
    """

    name: str = "provider"

    @abstractmethod
    async def lock(self, external_id: str) -> CommandOutcome:
        """Lock the device."""

    @abstractmethod
    async def unlock(self, external_id: str) -> CommandOutcome:
        """Unlock the device."""

    @abstractmethod
    async def status(self, external_id: str) -> Optional[ProviderStatus]:
        """Get device status, or None if the device is unreachable."""

    async def set_code(self, external_id: str, slot: int, code: str) -> CommandOutcome:
        """Program a keypad code into a slot."""
        return CommandOutcome.REJECTED

    async def clear_code(self, external_id: str, slot: int) -> CommandOutcome:
        """Clear a keypad slot."""
        return CommandOutcome.REJECTED

    async def close(self) -> None:
        return None
