"""
Lock-window evaluation for bus stock sheets.

A sheet is read-only for crew while its manual ``isLocked`` flag is set or
while its recurring schedule says so. Evaluate on every permission check;
``now`` is the only changing input.
"""

import json
import logging
from datetime import datetime, tzinfo
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from tourcal.core.models import LockSchedule

logger = logging.getLogger(__name__)


def _minutes(clock: tuple[int, int]) -> int:
    return clock[0] * 60 + clock[1]


def weekday_index(now: datetime) -> int:
    """Sunday=0 .. Saturday=6."""
    return now.isoweekday() % 7


def is_locked(schedule: Optional[LockSchedule], now: datetime) -> bool:
    """
    True when ``now`` falls inside the schedule's lock window.

    ``now`` is read as wall-clock time in the resource's reference zone; pass
    an aware datetime already converted to that zone.
    """
    if schedule is None:
        return False
    if schedule.days_active and weekday_index(now) not in schedule.days_active:
        return False

    lock_minutes = _minutes(schedule.lock_time)
    now_minutes = now.hour * 60 + now.minute

    if schedule.unlock_time is None:
        return now_minutes >= lock_minutes

    unlock_minutes = _minutes(schedule.unlock_time)
    if lock_minutes < unlock_minutes:
        return lock_minutes <= now_minutes < unlock_minutes
    # Window wraps past midnight
    return now_minutes >= lock_minutes or now_minutes < unlock_minutes


def is_locked_now(schedule: Optional[LockSchedule], tz: Optional[tzinfo] = None) -> bool:
    return is_locked(schedule, datetime.now(tz))


def parse_schedule(raw: Any) -> Optional[LockSchedule]:
    """Parse a stored lockScheduleJSON value; malformed schedules lock nothing."""
    try:
        return LockSchedule.from_json(raw)
    except (json.JSONDecodeError, ValidationError, TypeError, ValueError) as e:
        logger.warning(f"[LockWindow] Ignoring malformed lock schedule {raw!r}: {e}")
        return None


def is_sheet_locked(
    fields: Optional[Mapping[str, Any]],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> bool:
    """
    Lock state of a BusStockSheet from its record fields.

    Args:
        fields: Plain field values (``Record.fields``).
        now: Evaluation time; defaults to the current time in ``tz``.
        tz: Reference zone used when ``now`` is omitted (local time if None).
    """
    if not fields:
        return False
    if fields.get("isLocked") == 1:
        return True
    schedule = parse_schedule(fields.get("lockScheduleJSON"))
    if schedule is None:
        return False
    if now is None:
        return is_locked_now(schedule, tz)
    return is_locked(schedule, now)
