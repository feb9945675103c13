"""
Tenant-scoped read access to routing configuration.

RoutingRepository adds the tenant predicate to every statement; without a
tenant it returns nothing. TenantDirectory holds the handful of deliberate
cross-tenant lookups authentication needs to discover the tenant from the
request content.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import time
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import Select, delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from callrouting.routing.models import (
    BusinessHoursDay,
    BusinessHoursException,
    BusinessHoursSchedule,
    ConferenceRoom,
    DidNumber,
    EntityStatus,
    Extension,
    ExtensionType,
    IvrMenu,
    Organization,
    RingGroup,
    RingGroupMember,
    WebhookCredential,
)
from callrouting.routing.schemas import (
    ConferenceRoomSnapshot,
    DaySchedule,
    DidSnapshot,
    ExtensionSnapshot,
    IvrMenuSnapshot,
    IvrOptionSnapshot,
    MemberSnapshot,
    RingGroupSnapshot,
    ScheduleException,
    ScheduleSnapshot,
    TimeRange,
)
from callrouting.routing.targets import (
    parse_destination,
    parse_did_routing,
    parse_extension_configuration,
    parse_schedule_action,
)
from callrouting.shared.exceptions import ConfigurationError
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)

_REFERENCE_MODELS: dict[str, Any] = {
    "extension": Extension,
    "ring_group": RingGroup,
    "business_hours": BusinessHoursSchedule,
    "conference_room": ConferenceRoom,
    "ivr_menu": IvrMenu,
}


def _end_of_range(value: time) -> time:
    # 00:00 as an end time means "until midnight"
    return time.max if value == time.min else value


def _time_range(start: time, end: time) -> TimeRange:
    return TimeRange(start=start, end=_end_of_range(end))


def extension_snapshot(extension: Extension) -> ExtensionSnapshot:
    return ExtensionSnapshot(
        id=extension.id,
        organization_id=extension.organization_id,
        extension_number=extension.extension_number,
        name=extension.name,
        type=extension.type,
        status=extension.status,
        sip_uri=extension.sip_uri,
        target=parse_extension_configuration(
            extension.type,
            extension.configuration,
            service_url=extension.service_url,
            service_token=extension.service_token,
            service_params=extension.service_params,
        ),
    )


def did_snapshot(did: DidNumber) -> DidSnapshot:
    return DidSnapshot(
        id=did.id,
        organization_id=did.organization_id,
        phone_number=did.phone_number,
        status=did.status,
        target=parse_did_routing(did.routing_type, did.routing_config),
    )


def schedule_snapshot(schedule: BusinessHoursSchedule, timezone: str) -> ScheduleSnapshot:
    days = tuple(
        DaySchedule(
            day_of_week=day.day_of_week,
            enabled=day.enabled,
            ranges=tuple(_time_range(r.start_time, r.end_time) for r in day.ranges),
        )
        for day in schedule.days
    )
    exceptions = tuple(
        ScheduleException(
            date=exc.date,
            name=exc.name,
            type=exc.type,
            ranges=tuple(_time_range(r.start_time, r.end_time) for r in exc.ranges),
        )
        for exc in schedule.exceptions
    )
    return ScheduleSnapshot(
        id=schedule.id,
        organization_id=schedule.organization_id,
        name=schedule.name,
        status=schedule.status,
        timezone=schedule.timezone or timezone,
        days=days,
        exceptions=exceptions,
        open_action=parse_schedule_action(schedule.open_hours_action),
        closed_action=parse_schedule_action(schedule.closed_hours_action),
    )


class RoutingRepositoryProtocol(Protocol):
    """Read contract the resolver depends on."""

    organization_id: int | None

    async def get_did(self, phone_number: str) -> DidSnapshot | None: ...

    async def get_extension(self, extension_number: str) -> ExtensionSnapshot | None: ...

    async def get_extension_by_id(self, extension_id: int) -> ExtensionSnapshot | None: ...

    async def get_ring_group(self, ring_group_id: int) -> RingGroupSnapshot | None: ...

    async def get_schedule(self, schedule_id: int) -> ScheduleSnapshot | None: ...

    async def get_conference_room(self, room_id: int) -> ConferenceRoomSnapshot | None: ...

    async def get_ivr_menu(self, menu_id: int) -> IvrMenuSnapshot | None: ...

    async def reference_owner(self, kind: str, entity_id: int) -> int | None: ...


class RoutingRepository:
    """Tenant-scoped configuration reads."""

    def __init__(self, session: AsyncSession, organization_id: int | None) -> None:
        """Initialize repository.

        Args:
            session: Async database session.
            organization_id: Tenant; ``None`` makes every lookup return nothing.
        """
        self._session = session
        self.organization_id = organization_id

    def _scoped(self, stmt: Select[Any], model: Any) -> Select[Any]:
        return stmt.where(model.organization_id == self.organization_id)

    async def _first(self, stmt: Select[Any]) -> Any | None:
        result = await self._session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    def _snapshot(build: Any, *args: Any) -> Any:
        try:
            return build(*args)
        except ValidationError as exc:
            raise ConfigurationError(
                "Routing configuration failed validation",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    async def get_did(self, phone_number: str) -> DidSnapshot | None:
        if self.organization_id is None:
            return None
        stmt = self._scoped(select(DidNumber), DidNumber).where(DidNumber.phone_number == phone_number)
        did = await self._first(stmt)
        return self._snapshot(did_snapshot, did) if did is not None else None

    async def get_extension(self, extension_number: str) -> ExtensionSnapshot | None:
        if self.organization_id is None:
            return None
        stmt = self._scoped(select(Extension), Extension).where(
            Extension.extension_number == extension_number
        )
        extension = await self._first(stmt)
        return self._snapshot(extension_snapshot, extension) if extension is not None else None

    async def get_extension_by_id(self, extension_id: int) -> ExtensionSnapshot | None:
        if self.organization_id is None:
            return None
        stmt = self._scoped(select(Extension), Extension).where(Extension.id == extension_id)
        extension = await self._first(stmt)
        return self._snapshot(extension_snapshot, extension) if extension is not None else None

    async def get_ring_group(self, ring_group_id: int) -> RingGroupSnapshot | None:
        if self.organization_id is None:
            return None
        stmt = self._scoped(select(RingGroup), RingGroup).where(RingGroup.id == ring_group_id)
        group = await self._first(stmt)
        if group is None:
            return None

        member_stmt = (
            select(RingGroupMember, Extension)
            .join(Extension, Extension.id == RingGroupMember.extension_id)
            .where(RingGroupMember.ring_group_id == group.id)
            .order_by(RingGroupMember.priority, RingGroupMember.id)
        )
        rows = (await self._session.execute(member_stmt)).all()
        members = tuple(
            MemberSnapshot(
                extension_id=extension.id,
                extension_number=extension.extension_number,
                priority=member.priority,
                status=extension.status,
                sip_uri=extension.sip_uri,
                organization_id=extension.organization_id,
            )
            for member, extension in rows
        )

        def build() -> RingGroupSnapshot:
            return RingGroupSnapshot(
                id=group.id,
                organization_id=group.organization_id,
                name=group.name,
                strategy=group.strategy,
                timeout=group.timeout,
                ring_turns=max(group.ring_turns, 1),
                status=group.status,
                fallback=parse_destination(group.fallback_action, group.fallback_target_id),
                members=members,
            )

        return self._snapshot(build)

    async def get_schedule(self, schedule_id: int) -> ScheduleSnapshot | None:
        if self.organization_id is None:
            return None
        stmt = (
            self._scoped(select(BusinessHoursSchedule), BusinessHoursSchedule)
            .where(BusinessHoursSchedule.id == schedule_id)
            .options(
                selectinload(BusinessHoursSchedule.days).selectinload(BusinessHoursDay.ranges),
                selectinload(BusinessHoursSchedule.exceptions).selectinload(
                    BusinessHoursException.ranges
                ),
            )
        )
        schedule = await self._first(stmt)
        if schedule is None:
            return None
        tz_stmt = select(Organization.timezone).where(Organization.id == schedule.organization_id)
        timezone = (await self._session.execute(tz_stmt)).scalar_one_or_none() or "UTC"
        return self._snapshot(schedule_snapshot, schedule, timezone)

    async def get_conference_room(self, room_id: int) -> ConferenceRoomSnapshot | None:
        if self.organization_id is None:
            return None
        stmt = self._scoped(select(ConferenceRoom), ConferenceRoom).where(ConferenceRoom.id == room_id)
        room = await self._first(stmt)
        if room is None:
            return None
        return ConferenceRoomSnapshot(
            id=room.id,
            organization_id=room.organization_id,
            name=room.name,
            max_participants=room.max_participants,
            mute_on_entry=room.mute_on_entry,
            announce_join_leave=room.announce_join_leave,
            status=room.status,
        )

    async def get_ivr_menu(self, menu_id: int) -> IvrMenuSnapshot | None:
        if self.organization_id is None:
            return None
        stmt = (
            self._scoped(select(IvrMenu), IvrMenu)
            .where(IvrMenu.id == menu_id)
            .options(selectinload(IvrMenu.options))
        )
        menu = await self._first(stmt)
        if menu is None:
            return None

        def build() -> IvrMenuSnapshot:
            return IvrMenuSnapshot(
                id=menu.id,
                organization_id=menu.organization_id,
                name=menu.name,
                audio_url=menu.audio_url,
                tts_text=menu.tts_text,
                tts_voice=menu.tts_voice,
                max_turns=max(menu.max_turns, 1),
                failover=parse_destination(
                    menu.failover_destination_type, menu.failover_destination_id
                ),
                status=menu.status,
                options=tuple(
                    IvrOptionSnapshot(
                        digits=option.input_digits,
                        description=option.description,
                        target=parse_destination(option.destination_type, option.destination_id),
                    )
                    for option in menu.options
                ),
            )

        return self._snapshot(build)

    async def reference_owner(self, kind: str, entity_id: int) -> int | None:
        """Tenant owning a referenced entity, used only to report cross-tenant references."""
        if self.organization_id is None:
            return None
        model = _REFERENCE_MODELS.get(kind)
        if model is None:
            return None
        stmt = select(model.organization_id).where(model.id == entity_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def ring_group_exists(self, ring_group_id: int) -> bool:
        if self.organization_id is None:
            return False
        stmt = self._scoped(select(RingGroup.id), RingGroup).where(RingGroup.id == ring_group_id)
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def replace_ring_group_members(
        self,
        ring_group_id: int,
        members: Sequence[tuple[int, int]],
    ) -> None:
        """Delete and recreate a ring group's membership inside the current transaction.

        Args:
            ring_group_id: Ring group to update.
            members: ``(extension_id, priority)`` pairs.
        """
        if self.organization_id is None:
            raise ConfigurationError("Tenant context required to modify ring group members")

        extension_ids = [extension_id for extension_id, _ in members]
        if extension_ids:
            owned_stmt = self._scoped(select(Extension.id), Extension).where(
                Extension.id.in_(extension_ids)
            )
            owned = set((await self._session.execute(owned_stmt)).scalars().all())
            foreign = sorted(set(extension_ids) - owned)
            if foreign:
                raise ConfigurationError(
                    "Ring group members must belong to the same organization",
                    details={"extension_ids": foreign},
                )

        await self._session.execute(
            delete(RingGroupMember).where(RingGroupMember.ring_group_id == ring_group_id)
        )
        self._session.add_all(
            RingGroupMember(ring_group_id=ring_group_id, extension_id=extension_id, priority=priority)
            for extension_id, priority in members
        )
        await self._session.flush()


class TenantDirectory:
    """Cross-tenant lookups used to identify the tenant of an inbound webhook."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def tenant_for_did(self, phone_number: str) -> int | None:
        stmt = (
            select(DidNumber.organization_id)
            .join(Organization, Organization.id == DidNumber.organization_id)
            .where(DidNumber.phone_number == phone_number)
            .where(DidNumber.status == EntityStatus.ACTIVE)
            .where(Organization.status == EntityStatus.ACTIVE)
        )
        return (await self._session.execute(stmt)).scalars().first()

    async def tenants_for_extension(
        self,
        extension_number: str,
        types: Sequence[ExtensionType] | None = None,
    ) -> list[int]:
        stmt = (
            select(Extension.organization_id)
            .join(Organization, Organization.id == Extension.organization_id)
            .where(Extension.extension_number == extension_number)
            .where(Extension.status == EntityStatus.ACTIVE)
            .where(Organization.status == EntityStatus.ACTIVE)
            .order_by(Extension.organization_id)
        )
        if types:
            stmt = stmt.where(Extension.type.in_(list(types)))
        return list((await self._session.execute(stmt)).scalars().all())

    async def tenant_for_domain(self, domain_uuid: str) -> int | None:
        stmt = select(Organization.id).where(Organization.domain_uuid == domain_uuid)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def bearer_token(self, organization_id: int) -> str | None:
        stmt = (
            select(WebhookCredential.bearer_token)
            .join(Organization, Organization.id == WebhookCredential.organization_id)
            .where(WebhookCredential.organization_id == organization_id)
            .where(WebhookCredential.is_active.is_(True))
            .where(Organization.status == EntityStatus.ACTIVE)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()


__all__ = [
    "RoutingRepository",
    "RoutingRepositoryProtocol",
    "TenantDirectory",
    "did_snapshot",
    "extension_snapshot",
    "schedule_snapshot",
]
