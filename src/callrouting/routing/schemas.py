"""
Immutable snapshots of routing configuration.

Snapshots are what the resolver works on and what the configuration cache
stores; they round-trip through ``model_dump(mode="json")``.
"""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, ConfigDict, model_validator

from callrouting.routing.models import (
    EntityStatus,
    ExtensionType,
    RingGroupStrategy,
    ScheduleExceptionType,
)
from callrouting.routing.targets import RoutingTarget


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)


class TimeRange(_Snapshot):
    """Local time range, start inclusive and end exclusive."""

    start: dt.time
    end: dt.time

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.start >= self.end:
            raise ValueError(f"time range start {self.start} must be before end {self.end}")
        return self

    def contains(self, moment: dt.time) -> bool:
        return self.start <= moment < self.end


class DaySchedule(_Snapshot):
    day_of_week: int  # 0 = Monday
    enabled: bool = False
    ranges: tuple[TimeRange, ...] = ()


class ScheduleException(_Snapshot):
    date: dt.date
    name: str = ""
    type: ScheduleExceptionType
    ranges: tuple[TimeRange, ...] = ()


class ScheduleSnapshot(_Snapshot):
    id: int
    organization_id: int
    name: str = ""
    status: EntityStatus = EntityStatus.ACTIVE
    timezone: str = "UTC"
    days: tuple[DaySchedule, ...] = ()
    exceptions: tuple[ScheduleException, ...] = ()
    open_action: RoutingTarget | None = None
    closed_action: RoutingTarget | None = None

    @model_validator(mode="after")
    def _unique_exception_dates(self) -> "ScheduleSnapshot":
        seen: set[dt.date] = set()
        for exception in self.exceptions:
            if exception.date in seen:
                raise ValueError(f"duplicate schedule exception for {exception.date.isoformat()}")
            seen.add(exception.date)
        return self

    @property
    def is_active(self) -> bool:
        return self.status is EntityStatus.ACTIVE

    def day(self, day_of_week: int) -> DaySchedule | None:
        for entry in self.days:
            if entry.day_of_week == day_of_week:
                return entry
        return None

    def exception_for(self, on: dt.date) -> ScheduleException | None:
        for exception in self.exceptions:
            if exception.date == on:
                return exception
        return None


class ExtensionSnapshot(_Snapshot):
    id: int
    organization_id: int
    extension_number: str
    name: str | None = None
    type: ExtensionType
    status: EntityStatus
    sip_uri: str | None = None
    target: RoutingTarget | None = None

    @property
    def is_active(self) -> bool:
        return self.status is EntityStatus.ACTIVE


class DidSnapshot(_Snapshot):
    id: int
    organization_id: int
    phone_number: str
    status: EntityStatus
    target: RoutingTarget

    @property
    def is_active(self) -> bool:
        return self.status is EntityStatus.ACTIVE


class MemberSnapshot(_Snapshot):
    extension_id: int
    extension_number: str
    priority: int
    status: EntityStatus
    sip_uri: str | None = None
    organization_id: int

    @property
    def is_active(self) -> bool:
        return self.status is EntityStatus.ACTIVE


class RingGroupSnapshot(_Snapshot):
    id: int
    organization_id: int
    name: str
    strategy: RingGroupStrategy
    timeout: int = 30
    ring_turns: int = 1
    status: EntityStatus = EntityStatus.ACTIVE
    fallback: RoutingTarget | None = None
    members: tuple[MemberSnapshot, ...] = ()

    @property
    def is_active(self) -> bool:
        return self.status is EntityStatus.ACTIVE


class ConferenceRoomSnapshot(_Snapshot):
    id: int
    organization_id: int
    name: str
    max_participants: int = 50
    mute_on_entry: bool = False
    announce_join_leave: bool = False
    status: EntityStatus = EntityStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status is EntityStatus.ACTIVE

    @property
    def identifier(self) -> str:
        return f"conf_{self.id}"


class IvrOptionSnapshot(_Snapshot):
    digits: str
    description: str | None = None
    target: RoutingTarget


class IvrMenuSnapshot(_Snapshot):
    id: int
    organization_id: int
    name: str
    audio_url: str | None = None
    tts_text: str | None = None
    tts_voice: str | None = None
    max_turns: int = 3
    failover: RoutingTarget | None = None
    status: EntityStatus = EntityStatus.ACTIVE
    options: tuple[IvrOptionSnapshot, ...] = ()

    @property
    def is_active(self) -> bool:
        return self.status is EntityStatus.ACTIVE

    def option_for(self, digits: str) -> IvrOptionSnapshot | None:
        for option in self.options:
            if option.digits == digits:
                return option
        return None
