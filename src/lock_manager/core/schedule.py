"""Access-code validity evaluation and policy validation.

Evaluation is a pure function of a code's policy fields and an instant, so
it can run once per keypad attempt without touching storage.
"""

from datetime import datetime, time, timezone, tzinfo
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lock_manager.core.exceptions import ValidationError
from lock_manager.db.models import ScheduleType

# Weekday indices used by scheduled codes: 0=Sunday .. 6=Saturday
WEEKDAYS = range(7)

# Fields that only mean something for a given policy
POLICY_FIELDS: dict[ScheduleType, tuple[str, ...]] = {
    ScheduleType.ALWAYS: (),
    ScheduleType.TEMPORARY: ("starts_at", "expires_at"),
    ScheduleType.SCHEDULED: ("schedule_days", "schedule_start_time", "schedule_end_time"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a timestamp to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(name: Optional[str], fallback: str = "UTC") -> tzinfo:
    """Get the zone for a lock, falling back to the household zone."""
    key = name or fallback
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown time zone: {key}") from e


def sunday_weekday(moment: datetime) -> int:
    """Weekday index with Sunday as 0."""
    return (moment.weekday() + 1) % 7


def is_valid_at(code: Any, at: datetime, tz: Optional[tzinfo] = None) -> bool:
    """Return whether an access code is usable at the given instant.

    Args:
        code: Object with the AccessCode policy attributes
        at: Instant to evaluate (naive values are taken as UTC)
        tz: Local zone of the lock, used for SCHEDULED windows

    Returns:
        True if the code should open the lock at `at`
    """
    if not code.is_active:
        return False

    schedule_type = ScheduleType(code.schedule_type)
    at = as_utc(at)

    if schedule_type == ScheduleType.ALWAYS:
        return True

    if schedule_type == ScheduleType.TEMPORARY:
        if code.expires_at is None:
            return False
        if code.starts_at is not None and at < as_utc(code.starts_at):
            return False
        # Inclusive: still valid exactly at expiry
        return at <= as_utc(code.expires_at)

    days = code.schedule_days or []
    start, end = code.schedule_start_time, code.schedule_end_time
    if not days or start is None or end is None:
        return False

    local = at.astimezone(tz or timezone.utc)
    if sunday_weekday(local) not in days:
        return False
    # End bound exclusive so adjacent slots never overlap
    return start <= local.time() < end


def parse_time(value: Any) -> Optional[time]:
    """Accept a time or an "HH:MM[:SS]" string."""
    if value is None or isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid time of day: {value!r}") from e


def normalize_policy(fields: dict[str, Any]) -> dict[str, Any]:
    """Validate a code's policy fields and clear the ones its type does not use.

    Raises:
        ValidationError: if the policy is inconsistent
    """
    try:
        schedule_type = ScheduleType(fields.get("schedule_type") or ScheduleType.ALWAYS)
    except ValueError as e:
        raise ValidationError(f"Unknown schedule type: {fields.get('schedule_type')}") from e

    result = dict(fields)
    result["schedule_type"] = schedule_type

    for other_type, names in POLICY_FIELDS.items():
        if other_type != schedule_type:
            for name in names:
                if name not in POLICY_FIELDS[schedule_type]:
                    result[name] = None

    if schedule_type == ScheduleType.TEMPORARY:
        starts_at, expires_at = result.get("starts_at"), result.get("expires_at")
        if expires_at is None:
            raise ValidationError("Temporary codes require an expiry")
        result["expires_at"] = as_utc(expires_at)
        if starts_at is not None:
            result["starts_at"] = as_utc(starts_at)
            if result["expires_at"] <= result["starts_at"]:
                raise ValidationError("Code must expire after it starts")

    elif schedule_type == ScheduleType.SCHEDULED:
        days = result.get("schedule_days") or []
        if not days:
            raise ValidationError("Scheduled codes need at least one day")
        if any(not isinstance(d, int) or d not in WEEKDAYS for d in days):
            raise ValidationError(f"Schedule days must be 0 (Sunday) to 6 (Saturday): {days}")
        result["schedule_days"] = sorted(set(days))

        start = parse_time(result.get("schedule_start_time"))
        end = parse_time(result.get("schedule_end_time"))
        if start is None or end is None:
            raise ValidationError("Scheduled codes need a start and end time")
        if start >= end:
            # Overnight windows must be split across two days
            raise ValidationError(
                f"Schedule start {start.isoformat()} must be before end {end.isoformat()}"
            )
        result["schedule_start_time"] = start
        result["schedule_end_time"] = end

    return result
