"""
Business-hours schedule evaluation.

``ScheduleEvaluator.evaluate`` is a pure function of (schedule, instant): it
reads no clock and keeps no state. Local calendar date and time-of-day are
derived with the schedule's IANA zone, so daylight-saving changes follow the
zone's rules rather than a fixed offset.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from callrouting.routing.schemas import ScheduleException, ScheduleSnapshot, TimeRange
from callrouting.routing.models import ScheduleExceptionType
from callrouting.shared.exceptions import ConfigurationError

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# How far ahead next_transition looks before giving up.
_TRANSITION_HORIZON_DAYS = 8


class ScheduleStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class ScheduleEvaluation:
    """Outcome of evaluating a schedule at one instant."""

    status: ScheduleStatus
    reason: str
    exception_applied: bool = False
    exception_name: str | None = None
    local_time: datetime | None = None
    next_transition: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is ScheduleStatus.OPEN


def merge_ranges(ranges: Iterable[TimeRange]) -> list[TimeRange]:
    """Union of ranges: sort by start and fold overlapping or touching ranges."""
    merged: list[TimeRange] = []
    for current in sorted(ranges, key=lambda r: (r.start, r.end)):
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            if current.end > last.end:
                merged[-1] = TimeRange(start=last.start, end=current.end)
            continue
        merged.append(current)
    return merged


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown schedule timezone: {name}") from exc


def _fmt(moment: time) -> str:
    if moment == time.max:
        return "24:00"
    return moment.strftime("%H:%M")


class ScheduleEvaluator:
    """Maps (schedule, instant) to open/closed."""

    def __init__(self, compute_next_transition: bool = True) -> None:
        self._compute_next_transition = compute_next_transition

    def evaluate(self, schedule: ScheduleSnapshot, instant: datetime) -> ScheduleEvaluation:
        """Evaluate ``schedule`` at ``instant``.

        Args:
            schedule: Schedule snapshot.
            instant: Timezone-aware instant.

        Returns:
            Status, human-readable reason and whether a date exception decided it.
        """
        if instant.tzinfo is None or instant.utcoffset() is None:
            raise ValueError("instant must be timezone-aware")

        zone = _zone(schedule.timezone)
        local = instant.astimezone(zone)
        status, reason, exception = self._decide(schedule, local)

        next_transition = None
        if self._compute_next_transition:
            next_transition = self.next_transition(schedule, instant)

        return ScheduleEvaluation(
            status=status,
            reason=reason,
            exception_applied=exception is not None,
            exception_name=exception.name if exception is not None else None,
            local_time=local,
            next_transition=next_transition,
        )

    def _decide(
        self,
        schedule: ScheduleSnapshot,
        local: datetime,
    ) -> tuple[ScheduleStatus, str, ScheduleException | None]:
        if not schedule.is_active:
            return ScheduleStatus.CLOSED, "Schedule is inactive", None

        moment = local.time().replace(tzinfo=None)
        exception = schedule.exception_for(local.date())
        if exception is not None:
            label = exception.name or exception.date.isoformat()
            if exception.type is ScheduleExceptionType.CLOSED:
                return ScheduleStatus.CLOSED, f"Closed: {label}", exception
            window = self._containing(merge_ranges(exception.ranges), moment)
            if window is not None:
                return (
                    ScheduleStatus.OPEN,
                    f"Open ({_fmt(window.start)}-{_fmt(window.end)}, special hours: {label})",
                    exception,
                )
            return ScheduleStatus.CLOSED, f"Outside special hours: {label}", exception

        weekday = local.weekday()
        day = schedule.day(weekday)
        if day is None or not day.enabled or not day.ranges:
            return ScheduleStatus.CLOSED, f"Closed on {_WEEKDAYS[weekday]}", None

        window = self._containing(merge_ranges(day.ranges), moment)
        if window is not None:
            return ScheduleStatus.OPEN, f"Open ({_fmt(window.start)}-{_fmt(window.end)})", None
        return ScheduleStatus.CLOSED, "Outside business hours", None

    @staticmethod
    def _containing(merged: list[TimeRange], moment: time) -> TimeRange | None:
        for window in merged:
            if window.contains(moment):
                return window
        return None

    def _ranges_on(self, schedule: ScheduleSnapshot, on: date) -> list[TimeRange]:
        exception = schedule.exception_for(on)
        if exception is not None:
            if exception.type is ScheduleExceptionType.CLOSED:
                return []
            return merge_ranges(exception.ranges)
        day = schedule.day(on.weekday())
        if day is None or not day.enabled:
            return []
        return merge_ranges(day.ranges)

    def next_transition(self, schedule: ScheduleSnapshot, instant: datetime) -> datetime | None:
        """First instant after ``instant`` at which the status flips.

        Display-only; returns ``None`` for inactive schedules or when nothing
        changes within the lookahead horizon.
        """
        if not schedule.is_active:
            return None

        zone = _zone(schedule.timezone)
        local = instant.astimezone(zone)
        current, _, _ = self._decide(schedule, local)

        for offset in range(_TRANSITION_HORIZON_DAYS + 1):
            day = local.date() + timedelta(days=offset)
            boundaries = {time.min}
            for window in self._ranges_on(schedule, day):
                boundaries.add(window.start)
                if window.end != time.max:
                    boundaries.add(window.end)
            for boundary in sorted(boundaries):
                candidate = datetime.combine(day, boundary, tzinfo=zone)
                if candidate <= instant:
                    continue
                status, _, _ = self._decide(schedule, candidate.astimezone(zone))
                if status is not current:
                    return candidate
        return None


__all__ = [
    "ScheduleEvaluation",
    "ScheduleEvaluator",
    "ScheduleStatus",
    "merge_ranges",
]
