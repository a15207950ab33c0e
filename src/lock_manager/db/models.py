"""Database models for the lock manager."""

import uuid
from datetime import datetime, time
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from lock_manager.config import LockProvider


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def new_id() -> str:
    return uuid.uuid4().hex


class ScheduleType(str, Enum):
    """Validity policy of an access code."""

    ALWAYS = "ALWAYS"
    TEMPORARY = "TEMPORARY"
    SCHEDULED = "SCHEDULED"


class ActivityAction(str, Enum):
    """Security-relevant transitions recorded in the audit trail."""

    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    CODE_USED = "CODE_USED"
    CODE_CREATED = "CODE_CREATED"
    CODE_UPDATED = "CODE_UPDATED"
    CODE_DELETED = "CODE_DELETED"
    CODE_DISABLED = "CODE_DISABLED"
    ADDED = "ADDED"
    REMOVED = "REMOVED"


class ActivityMethod(str, Enum):
    """How a transition was initiated."""

    APP = "APP"
    KEYPAD = "KEYPAD"
    MANUAL = "MANUAL"
    PROVIDER = "PROVIDER"


class Lock(Base):
    """A physical lock owned by a household."""

    __tablename__ = "locks"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    household_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(100))
    provider: Mapped[LockProvider] = mapped_column(
        SQLEnum(LockProvider, native_enum=False, length=20)
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Status
    connected: Mapped[bool] = mapped_column(Boolean, default=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    battery_percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currently_locked: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @property
    def is_tracked(self) -> bool:
        """Whether state comes from a provider rather than an operator."""
        return self.external_id is not None and self.provider != LockProvider.MANUAL

    def __repr__(self) -> str:
        return f"<Lock {self.id} {self.name}>"


class AccessCode(Base):
    """A policy-governed credential for one lock."""

    __tablename__ = "access_codes"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    lock_id: Mapped[str] = mapped_column(ForeignKey("locks.id"), index=True)
    name: Mapped[str] = mapped_column(String(100))
    code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    keypad_slot: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Weak references to the grantee, never owned
    vendor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    person_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    guest_access_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    schedule_type: Mapped[ScheduleType] = mapped_column(
        SQLEnum(ScheduleType, native_enum=False, length=20), default=ScheduleType.ALWAYS
    )
    starts_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    schedule_days: Mapped[Optional[list[int]]] = mapped_column(JSON, nullable=True)
    schedule_start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    schedule_end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<AccessCode {self.id} {self.name} {self.schedule_type.value}>"


class ActivityEntry(Base):
    """Immutable audit record of a lock state transition.

    lock_id is not a foreign key: entries outlive the lock and its codes.
    """

    __tablename__ = "activity_entries"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    lock_id: Mapped[str] = mapped_column(String(32))
    sequence: Mapped[int] = mapped_column(Integer)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    action: Mapped[ActivityAction] = mapped_column(
        SQLEnum(ActivityAction, native_enum=False, length=20)
    )
    method: Mapped[ActivityMethod] = mapped_column(
        SQLEnum(ActivityMethod, native_enum=False, length=20), default=ActivityMethod.APP
    )
    code_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    code_name_snapshot: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True
    )

    __table_args__ = (
        UniqueConstraint("lock_id", "sequence", name="uq_activity_lock_sequence"),
    )

    def __repr__(self) -> str:
        return f"<ActivityEntry {self.lock_id}#{self.sequence} {self.action.value}>"
