"""Summary: Availability engine for meeting slot suggestions.

Importance: Turns busy intervals and a working-hours policy into a short list of free slots.
Alternatives: Query a provider free/busy API and pick the first gaps.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from inboxsync.models import AvailabilitySlot, BusyInterval, WorkingHoursPolicy


SLOT_ROUNDING_MINUTES = 30
SLOT_GAP_MINUTES = 120
DEFAULT_MAX_SLOTS = 3
DEFAULT_HORIZON_DAYS = 7

SATURDAY = 5


def suggest_slots(
    policy: WorkingHoursPolicy,
    busy_intervals: list[BusyInterval],
    duration_minutes: int,
    now: datetime,
    max_slots: int = DEFAULT_MAX_SLOTS,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
    gap_minutes: int = SLOT_GAP_MINUTES,
    rounding_minutes: int = SLOT_ROUNDING_MINUTES,
) -> list[AvailabilitySlot]:
    """Summary: Compute up to ``max_slots`` free slots within the horizon.

    Importance: Slots are weekday-only, inside working hours, respect minimum notice,
    never overlap a busy interval, and end no later than ``now + horizon_days``, the
    same bound the calendar is queried to. Day bounds are resolved per date so DST is honored.
    Alternatives: Step through the horizon in fixed increments.
    """

    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    now = now.astimezone(timezone.utc)
    zone = ZoneInfo(policy.timezone)
    duration = timedelta(minutes=duration_minutes)
    gap = timedelta(minutes=gap_minutes)
    min_instant = now + timedelta(hours=policy.min_notice_hours)
    max_instant = now + timedelta(days=horizon_days)
    relevant = relevant_intervals(busy_intervals, min_instant)

    slots: list[AvailabilitySlot] = []
    first_day = min_instant.astimezone(zone).date()
    for offset in range(horizon_days):
        if len(slots) >= max_slots:
            break
        local_day = first_day + timedelta(days=offset)
        if local_day.weekday() >= SATURDAY:
            continue
        day_start, day_end = working_window(policy, local_day, zone)
        cursor = day_start
        if min_instant > day_start:
            cursor = round_up(min_instant, rounding_minutes, zone)
        while cursor + duration <= day_end and len(slots) < max_slots:
            candidate_end = cursor + duration
            if candidate_end > max_instant:
                return slots
            conflict = first_conflict(cursor, candidate_end, relevant)
            if conflict is None:
                slots.append(AvailabilitySlot(start=cursor, end=candidate_end))
                cursor = candidate_end + gap
            else:
                cursor = round_up(conflict.end, rounding_minutes, zone)
    return slots


def working_window(
    policy: WorkingHoursPolicy, local_day: date, zone: ZoneInfo
) -> tuple[datetime, datetime]:
    """Summary: Resolve the working-hours window for one local date as UTC instants.

    Importance: The UTC offset is looked up for that specific date, not cached.
    Alternatives: Apply today's offset to every day in the horizon.
    """

    start = datetime.combine(local_day, policy.start, tzinfo=zone)
    end = datetime.combine(local_day, policy.end, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def relevant_intervals(
    busy_intervals: list[BusyInterval], window_start: datetime
) -> list[BusyInterval]:
    """Keep intervals still running at ``window_start``, sorted by start."""

    return sorted(
        (
            interval
            for interval in busy_intervals
            if interval.end > window_start
        ),
        key=lambda interval: (interval.start, interval.end),
    )


def first_conflict(
    start: datetime, end: datetime, busy_intervals: list[BusyInterval]
) -> BusyInterval | None:
    """Summary: Return the first busy interval that overlaps ``[start, end]``.

    Importance: Conflict means the start or end falls inside a busy interval, or a busy
    interval is fully contained in the candidate.
    Alternatives: Use a single half-open overlap test.
    """

    for busy in busy_intervals:
        if busy.start <= start < busy.end:
            return busy
        if busy.start < end <= busy.end:
            return busy
        if start <= busy.start and end >= busy.end:
            return busy
    return None


def round_up(instant: datetime, minutes: int, zone: ZoneInfo) -> datetime:
    """Summary: Round an instant up to the next wall-clock boundary of ``minutes``.

    Importance: Boundaries are taken on the local clock so half-hour offsets stay aligned.
    Alternatives: Round on the UTC clock.
    """

    instant = instant.astimezone(timezone.utc)
    local = instant.astimezone(zone)
    excess = timedelta(
        minutes=local.minute % minutes, seconds=local.second, microseconds=local.microsecond
    )
    if not excess:
        return instant
    return instant - excess + timedelta(minutes=minutes)
