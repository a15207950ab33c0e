"""API routes for the lock manager."""

from datetime import datetime, time
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from lock_manager.config import LockProvider
from lock_manager.core.manager import LockManager
from lock_manager.db.models import ActivityAction, ActivityMethod, ScheduleType
from lock_manager.providers.base import CommandOutcome

router = APIRouter()

# Dependency to get the manager instance
_manager: Optional[LockManager] = None


def get_manager() -> LockManager:
    if _manager is None:
        raise HTTPException(status_code=500, detail="Manager not initialized")
    return _manager


def set_manager(manager: Optional[LockManager]) -> None:
    global _manager
    _manager = manager


# Request models


class LockCreateRequest(BaseModel):
    household_id: str
    name: str
    provider: LockProvider
    external_id: Optional[str] = None
    timezone: Optional[str] = None
    actor: Optional[str] = None


class LockUpdateRequest(BaseModel):
    name: Optional[str] = None
    external_id: Optional[str] = None
    timezone: Optional[str] = None


class LockStatusRequest(BaseModel):
    """Manual status update, mainly for untracked locks."""

    connected: Optional[bool] = None
    battery_percent: Optional[int] = Field(None, ge=0, le=100)
    currently_locked: Optional[bool] = None
    last_sync_at: Optional[datetime] = None


class CommandRequest(BaseModel):
    actor: Optional[str] = None


class AccessCodeCreateRequest(BaseModel):
    name: str
    code: Optional[str] = Field(None, pattern=r"^\d{4,10}$")
    keypad_slot: Optional[int] = Field(None, ge=1)
    is_active: bool = True
    vendor_id: Optional[str] = None
    person_id: Optional[str] = None
    guest_access_id: Optional[str] = None
    schedule_type: ScheduleType = ScheduleType.ALWAYS
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    schedule_days: Optional[list[int]] = None  # 0=Sunday .. 6=Saturday
    schedule_start_time: Optional[time] = None
    schedule_end_time: Optional[time] = None
    actor: Optional[str] = None


class AccessCodeUpdateRequest(BaseModel):
    """Partial update; only fields sent are changed."""

    name: Optional[str] = None
    is_active: Optional[bool] = None
    vendor_id: Optional[str] = None
    person_id: Optional[str] = None
    guest_access_id: Optional[str] = None
    schedule_type: Optional[ScheduleType] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    schedule_days: Optional[list[int]] = None
    schedule_start_time: Optional[time] = None
    schedule_end_time: Optional[time] = None
    actor: Optional[str] = None


class CodeUsedRequest(BaseModel):
    code_id: Optional[str] = None
    at: Optional[datetime] = None
    provider_unlocked: bool = True
    method: ActivityMethod = ActivityMethod.KEYPAD


# Response models


class LockResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    household_id: str
    name: str
    provider: LockProvider
    external_id: Optional[str]
    timezone: Optional[str]
    connected: bool
    last_sync_at: Optional[datetime]
    battery_percent: Optional[int]
    currently_locked: Optional[bool]
    created_at: datetime
    updated_at: datetime


class AccessCodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    lock_id: str
    name: str
    code: Optional[str]
    keypad_slot: Optional[int]
    vendor_id: Optional[str]
    person_id: Optional[str]
    guest_access_id: Optional[str]
    schedule_type: ScheduleType
    starts_at: Optional[datetime]
    expires_at: Optional[datetime]
    schedule_days: Optional[list[int]]
    schedule_start_time: Optional[time]
    schedule_end_time: Optional[time]
    is_active: bool
    created_at: datetime
    updated_at: datetime
    # Only set when the list is evaluated at an instant
    valid: Optional[bool] = None


class ActivityEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    lock_id: str
    sequence: int
    timestamp: datetime
    action: ActivityAction
    method: ActivityMethod
    code_id: Optional[str]
    code_name_snapshot: Optional[str]
    metadata: Optional[dict[str, Any]] = Field(None, validation_alias="details")


class ActivityPageResponse(BaseModel):
    entries: list[ActivityEntryResponse]
    next_before: Optional[int]


class CommandResponse(BaseModel):
    command_id: str
    state: CommandOutcome
    sequence: int
    lock: LockResponse


# Health


@router.get("/health")
async def health_check(manager: LockManager = Depends(get_manager)):
    """Check the health of all components."""
    return await manager.health_check()


# Lock endpoints


@router.get("/locks", response_model=list[LockResponse])
async def list_locks(
    household_id: str = Query(...),
    manager: LockManager = Depends(get_manager),
):
    """Get all locks of a household."""
    return await manager.registry.list_for_household(household_id)


@router.post("/locks", response_model=LockResponse, status_code=201)
async def register_lock(
    request: LockCreateRequest,
    manager: LockManager = Depends(get_manager),
):
    """Register a lock."""
    return await manager.registry.register(
        household_id=request.household_id,
        name=request.name,
        provider=request.provider,
        external_id=request.external_id,
        timezone=request.timezone,
        actor=request.actor,
    )


@router.get("/locks/{lock_id}", response_model=LockResponse)
async def get_lock(lock_id: str, manager: LockManager = Depends(get_manager)):
    return await manager.registry.get(lock_id)


@router.patch("/locks/{lock_id}", response_model=LockResponse)
async def update_lock(
    lock_id: str,
    request: LockUpdateRequest,
    manager: LockManager = Depends(get_manager),
):
    """Rename, rebind or change the time zone of a lock."""
    return await manager.registry.update(lock_id, request.model_dump(exclude_unset=True))


@router.delete("/locks/{lock_id}")
async def remove_lock(
    lock_id: str,
    actor: Optional[str] = Query(None),
    manager: LockManager = Depends(get_manager),
):
    """Remove a lock and all of its access codes."""
    await manager.registry.remove(lock_id, actor=actor)
    return {"success": True, "lock_id": lock_id}


@router.patch("/locks/{lock_id}/status", response_model=LockResponse)
async def update_lock_status(
    lock_id: str,
    request: LockStatusRequest,
    manager: LockManager = Depends(get_manager),
):
    """Partially update connection, battery, lock state or sync time."""
    return await manager.registry.update_status(lock_id, **request.model_dump(exclude_unset=True))


@router.post("/locks/{lock_id}/refresh", response_model=LockResponse)
async def refresh_lock_status(lock_id: str, manager: LockManager = Depends(get_manager)):
    """Pull the current status of a provider-bound lock."""
    return await manager.dispatcher.refresh_status(lock_id)


@router.post("/locks/{lock_id}/lock", response_model=CommandResponse)
async def lock_lock(
    lock_id: str,
    request: Optional[CommandRequest] = None,
    manager: LockManager = Depends(get_manager),
):
    """Lock a lock. Fails without changing state if the provider does not confirm."""
    result = await manager.dispatcher.lock(lock_id, actor=request.actor if request else None)
    return CommandResponse(
        command_id=result.command_id,
        state=result.state,
        sequence=result.entry.sequence,
        lock=LockResponse.model_validate(result.lock),
    )


@router.post("/locks/{lock_id}/unlock", response_model=CommandResponse)
async def unlock_lock(
    lock_id: str,
    request: Optional[CommandRequest] = None,
    manager: LockManager = Depends(get_manager),
):
    """Unlock a lock. Fails without changing state if the provider does not confirm."""
    result = await manager.dispatcher.unlock(lock_id, actor=request.actor if request else None)
    return CommandResponse(
        command_id=result.command_id,
        state=result.state,
        sequence=result.entry.sequence,
        lock=LockResponse.model_validate(result.lock),
    )


# Access code endpoints


@router.get("/locks/{lock_id}/codes", response_model=list[AccessCodeResponse])
async def list_codes(
    lock_id: str,
    valid_at: Optional[datetime] = Query(None),
    manager: LockManager = Depends(get_manager),
):
    """Get a lock's codes, optionally with their validity at an instant."""
    if valid_at is None:
        return await manager.codes.list_for_lock(lock_id)

    result = []
    for code, valid in await manager.codes_valid_at(lock_id, valid_at):
        response = AccessCodeResponse.model_validate(code)
        response.valid = valid
        result.append(response)
    return result


@router.post("/locks/{lock_id}/codes", response_model=AccessCodeResponse, status_code=201)
async def create_code(
    lock_id: str,
    request: AccessCodeCreateRequest,
    manager: LockManager = Depends(get_manager),
):
    """Create an access code on a lock."""
    return await manager.codes.create(
        lock_id, request.model_dump(exclude={"actor"}), actor=request.actor
    )


@router.get("/locks/{lock_id}/codes/{code_id}", response_model=AccessCodeResponse)
async def get_code(lock_id: str, code_id: str, manager: LockManager = Depends(get_manager)):
    return await manager.codes.get(code_id, lock_id=lock_id)


@router.patch("/locks/{lock_id}/codes/{code_id}", response_model=AccessCodeResponse)
async def update_code(
    lock_id: str,
    code_id: str,
    request: AccessCodeUpdateRequest,
    manager: LockManager = Depends(get_manager),
):
    """Rename, reschedule or toggle an access code."""
    changes = request.model_dump(exclude_unset=True, exclude={"actor"})
    return await manager.codes.update(code_id, changes, lock_id=lock_id, actor=request.actor)


@router.delete("/locks/{lock_id}/codes/{code_id}")
async def delete_code(
    lock_id: str,
    code_id: str,
    actor: Optional[str] = Query(None),
    manager: LockManager = Depends(get_manager),
):
    """Delete an access code, clearing its keypad slot first."""
    await manager.codes.delete(code_id, lock_id=lock_id, actor=actor)
    return {"success": True, "code_id": code_id}


@router.post("/locks/{lock_id}/code-used", response_model=ActivityEntryResponse)
async def report_code_used(
    lock_id: str,
    request: CodeUsedRequest,
    manager: LockManager = Depends(get_manager),
):
    """Record a keypad entry reported by a provider or an operator."""
    return await manager.dispatcher.report_code_used(
        lock_id,
        request.code_id,
        at=request.at,
        provider_unlocked=request.provider_unlocked,
        method=request.method,
    )


# Activity endpoints


@router.get("/locks/{lock_id}/activity", response_model=ActivityPageResponse)
async def get_activity(
    lock_id: str,
    before: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    manager: LockManager = Depends(get_manager),
):
    """Get a lock's activity, newest first. Pass next_before as before for older entries."""
    page = await manager.audit.read(lock_id, limit=limit, before=before)
    return ActivityPageResponse(
        entries=[ActivityEntryResponse.model_validate(e) for e in page.entries],
        next_before=page.next_before,
    )


@router.get("/locks/{lock_id}/activity/verify")
async def verify_activity(lock_id: str, manager: LockManager = Depends(get_manager)):
    """Check a lock's audit sequence for gaps."""
    report = await manager.audit.verify(lock_id)
    return {
        "lock_id": report.lock_id,
        "count": report.count,
        "last_sequence": report.last_sequence,
        "missing": report.missing,
        "intact": report.intact,
    }
