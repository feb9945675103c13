"""
SQLAlchemy models for routing configuration.

These tables are written by the administrative layer; the routing engine only
reads them (plus CallLog, which it maintains from asynchronous events).
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from callrouting.shared.database import Base


class EntityStatus(str, Enum):
    """Administrative status shared by routable entities."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class RoutingType(str, Enum):
    """What a DID number routes to."""

    EXTENSION = "extension"
    RING_GROUP = "ring_group"
    BUSINESS_HOURS = "business_hours"
    CONFERENCE_ROOM = "conference_room"
    IVR_MENU = "ivr_menu"


class ExtensionType(str, Enum):
    """Extension kinds."""

    USER = "user"
    CONFERENCE = "conference"
    RING_GROUP = "ring_group"
    IVR = "ivr"
    AI_ASSISTANT = "ai_assistant"
    FORWARD = "forward"
    CUSTOM_LOGIC = "custom_logic"


class RingGroupStrategy(str, Enum):
    """Ring group distribution strategies."""

    SIMULTANEOUS = "simultaneous"
    ROUND_ROBIN = "round_robin"
    SEQUENTIAL = "sequential"


class DestinationType(str, Enum):
    """Destination kinds referenced by schedule actions, fallbacks and IVR options."""

    EXTENSION = "extension"
    RING_GROUP = "ring_group"
    BUSINESS_HOURS = "business_hours"
    CONFERENCE_ROOM = "conference_room"
    IVR_MENU = "ivr_menu"
    AI_ASSISTANT = "ai_assistant"
    HANGUP = "hangup"


class ScheduleExceptionType(str, Enum):
    """Date exception kinds."""

    CLOSED = "closed"
    SPECIAL_HOURS = "special_hours"


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Organization(Base):
    """Tenant."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "organization_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
    )
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    domain_uuid: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name!r})>"


class WebhookCredential(Base):
    """Per-tenant bearer token presented by real-time voice webhooks."""

    __tablename__ = "webhook_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    bearer_token: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        # never include the token
        return f"<WebhookCredential(organization_id={self.organization_id})>"


class DidNumber(Base):
    """Dialable external number."""

    __tablename__ = "did_numbers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    friendly_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    routing_type: Mapped[RoutingType] = mapped_column(
        _enum(RoutingType, "did_routing_type"),
        nullable=False,
    )
    routing_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "did_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
    )

    def __repr__(self) -> str:
        return f"<DidNumber(id={self.id}, phone_number={self.phone_number!r})>"


class Extension(Base):
    """Internal addressable endpoint."""

    __tablename__ = "extensions"
    __table_args__ = (
        UniqueConstraint("organization_id", "extension_number", name="uq_extensions_org_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    extension_number: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[ExtensionType] = mapped_column(
        _enum(ExtensionType, "extension_type"),
        nullable=False,
        default=ExtensionType.USER,
    )
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "extension_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
    )
    sip_uri: Mapped[str | None] = mapped_column(String(255), nullable=True)
    configuration: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    service_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    service_token: Mapped[str | None] = mapped_column(String(512), nullable=True)
    service_params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Extension(id={self.id}, number={self.extension_number!r}, type={self.type})>"


class RingGroup(Base):
    """Set of extensions rung under one distribution strategy."""

    __tablename__ = "ring_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    strategy: Mapped[RingGroupStrategy] = mapped_column(
        _enum(RingGroupStrategy, "ring_group_strategy"),
        nullable=False,
        default=RingGroupStrategy.SIMULTANEOUS,
    )
    timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    ring_turns: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    fallback_action: Mapped[DestinationType | None] = mapped_column(
        _enum(DestinationType, "ring_group_fallback_action"),
        nullable=True,
    )
    fallback_target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "ring_group_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
    )

    members: Mapped[list["RingGroupMember"]] = relationship(
        back_populates="ring_group",
        order_by="RingGroupMember.priority",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<RingGroup(id={self.id}, name={self.name!r}, strategy={self.strategy})>"


class RingGroupMember(Base):
    """Extension membership in a ring group, ordered by priority."""

    __tablename__ = "ring_group_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ring_group_id: Mapped[int] = mapped_column(
        ForeignKey("ring_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    extension_id: Mapped[int] = mapped_column(
        ForeignKey("extensions.id", ondelete="CASCADE"),
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    ring_group: Mapped[RingGroup] = relationship(back_populates="members")
    extension: Mapped[Extension] = relationship()


class BusinessHoursSchedule(Base):
    """Weekly open/closed timetable with date exceptions."""

    __tablename__ = "business_hours_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "schedule_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
    )
    # Falls back to the organization's timezone when unset.
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    open_hours_action: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    closed_hours_action: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    days: Mapped[list["BusinessHoursDay"]] = relationship(
        back_populates="schedule",
        order_by="BusinessHoursDay.day_of_week",
        cascade="all, delete-orphan",
    )
    exceptions: Mapped[list["BusinessHoursException"]] = relationship(
        back_populates="schedule",
        order_by="BusinessHoursException.date",
        cascade="all, delete-orphan",
    )


class BusinessHoursDay(Base):
    """One weekday entry; day_of_week 0 is Monday."""

    __tablename__ = "business_hours_days"
    __table_args__ = (
        UniqueConstraint("schedule_id", "day_of_week", name="uq_business_hours_days_schedule_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(
        ForeignKey("business_hours_schedules.id", ondelete="CASCADE"),
        nullable=False,
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    schedule: Mapped[BusinessHoursSchedule] = relationship(back_populates="days")
    ranges: Mapped[list["BusinessHoursTimeRange"]] = relationship(
        order_by="BusinessHoursTimeRange.start_time",
        cascade="all, delete-orphan",
    )


class BusinessHoursTimeRange(Base):
    """Local time range; an end_time of 00:00 means end of day."""

    __tablename__ = "business_hours_time_ranges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    day_id: Mapped[int] = mapped_column(
        ForeignKey("business_hours_days.id", ondelete="CASCADE"),
        nullable=False,
    )
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)


class BusinessHoursException(Base):
    """Date override; at most one per schedule and date."""

    __tablename__ = "business_hours_exceptions"
    __table_args__ = (
        UniqueConstraint("schedule_id", "date", name="uq_business_hours_exceptions_schedule_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(
        ForeignKey("business_hours_schedules.id", ondelete="CASCADE"),
        nullable=False,
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    type: Mapped[ScheduleExceptionType] = mapped_column(
        _enum(ScheduleExceptionType, "schedule_exception_type"),
        nullable=False,
    )

    schedule: Mapped[BusinessHoursSchedule] = relationship(back_populates="exceptions")
    ranges: Mapped[list["BusinessHoursExceptionRange"]] = relationship(
        order_by="BusinessHoursExceptionRange.start_time",
        cascade="all, delete-orphan",
    )


class BusinessHoursExceptionRange(Base):
    """Special-hours range for an exception date."""

    __tablename__ = "business_hours_exception_ranges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exception_id: Mapped[int] = mapped_column(
        ForeignKey("business_hours_exceptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)


class ConferenceRoom(Base):
    """Conference bridge."""

    __tablename__ = "conference_rooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    mute_on_entry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    announce_join_leave: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "conference_room_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
    )


class IvrMenu(Base):
    """Digit-driven menu."""

    __tablename__ = "ivr_menus"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    audio_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    tts_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    tts_voice: Mapped[str | None] = mapped_column(String(128), nullable=True)
    max_turns: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    failover_destination_type: Mapped[DestinationType | None] = mapped_column(
        _enum(DestinationType, "ivr_failover_destination_type"),
        nullable=True,
    )
    failover_destination_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "ivr_menu_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
    )

    options: Mapped[list["IvrMenuOption"]] = relationship(
        order_by="IvrMenuOption.priority",
        cascade="all, delete-orphan",
    )


class IvrMenuOption(Base):
    """Digit → destination mapping."""

    __tablename__ = "ivr_menu_options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ivr_menu_id: Mapped[int] = mapped_column(
        ForeignKey("ivr_menus.id", ondelete="CASCADE"),
        nullable=False,
    )
    input_digits: Mapped[str] = mapped_column(String(10), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    destination_type: Mapped[DestinationType] = mapped_column(
        _enum(DestinationType, "ivr_option_destination_type"),
        nullable=False,
    )
    destination_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class CallLog(Base):
    """Call progress maintained from asynchronous platform events."""

    __tablename__ = "call_logs"
    __table_args__ = (
        UniqueConstraint("organization_id", "call_id", name="uq_call_logs_org_call"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    call_id: Mapped[str] = mapped_column(String(128), nullable=False)
    direction: Mapped[str | None] = mapped_column(String(32), nullable=True)
    from_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="initiated")
    disposition: Mapped[str | None] = mapped_column(String(64), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event: Mapped[str | None] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CallLog(call_id={self.call_id!r}, status={self.status!r})>"
