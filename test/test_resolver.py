"""
Scenario tests for routing target resolution against a seeded database.
"""

from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from callrouting.routing.decisions import (
    ConferenceDecision,
    DialDecision,
    EndpointKind,
    HangupDecision,
    MenuDecision,
    ServiceDecision,
)
from callrouting.routing.engine import build_resolver
from callrouting.routing.locks import ConcurrencyGuard
from callrouting.routing.models import (
    BusinessHoursDay,
    BusinessHoursException,
    BusinessHoursExceptionRange,
    BusinessHoursSchedule,
    BusinessHoursTimeRange,
    ConferenceRoom,
    DestinationType,
    DidNumber,
    EntityStatus,
    Extension,
    ExtensionType,
    IvrMenu,
    IvrMenuOption,
    RingGroup,
    RingGroupMember,
    RingGroupStrategy,
    RoutingType,
    ScheduleExceptionType,
)
from callrouting.routing.resolver import (
    CLOSED_MESSAGE,
    INVALID_OPTION_MESSAGE,
    NO_AGENTS_MESSAGE,
    CallContext,
    CallDirection,
)
from callrouting.shared.exceptions import ConfigurationError, NotFound, Unavailable

NY = ZoneInfo("America/New_York")
BASE_URL = "https://routing.example.com"
CALLER = "+14155550100"

# 2025-01-06 is a Monday
MONDAY_10AM = datetime(2025, 1, 6, 10, 0, tzinfo=NY)
MONDAY_8PM = datetime(2025, 1, 6, 20, 0, tzinfo=NY)


def _ctx(
    org: int,
    dialed: str,
    caller: str = CALLER,
    direction: CallDirection = CallDirection.INBOUND,
    instant: datetime = MONDAY_10AM,
    call_id: str = "call-1",
) -> CallContext:
    return CallContext(
        organization_id=org,
        call_id=call_id,
        caller=caller,
        dialed=dialed,
        direction=direction,
        instant=instant,
    )


async def _add_did(db_session, org: int, number: str, routing_type: RoutingType, config: dict) -> None:
    db_session.add(
        DidNumber(
            organization_id=org,
            phone_number=number,
            routing_type=routing_type,
            routing_config=config,
            status=EntityStatus.ACTIVE,
        )
    )
    await db_session.flush()


async def _add_extension(db_session, org: int, number: str, ext_type: ExtensionType, **kwargs) -> Extension:
    extension = Extension(
        organization_id=org,
        extension_number=number,
        name=f"Ext {number}",
        type=ext_type,
        status=kwargs.pop("status", EntityStatus.ACTIVE),
        **kwargs,
    )
    db_session.add(extension)
    await db_session.flush()
    return extension


@pytest_asyncio.fixture
async def resolver(db_session, seeded, state_store, routing_config):
    return build_resolver(db_session, seeded.acme_id, state_store, routing_config, BASE_URL)


class TestInboundResolution:
    @pytest.mark.asyncio
    async def test_simultaneous_ring_group_rings_all_members(self, resolver, seeded):
        decision = await resolver.resolve(_ctx(seeded.acme_id, seeded.ring_group_did))

        assert isinstance(decision, DialDecision)
        assert decision.timeout == 25
        assert decision.ring_group_id == seeded.sales_group
        assert decision.action_url is None
        assert [e.address for e in decision.endpoints] == [
            "sip:101@acme.sip.example",
            "sip:102@acme.sip.example",
        ]

    @pytest.mark.asyncio
    async def test_schedule_open_routes_to_open_action(self, resolver, seeded):
        decision = await resolver.resolve(_ctx(seeded.acme_id, seeded.schedule_did))

        assert isinstance(decision, DialDecision)
        assert decision.endpoints[0].address == "sip:101@acme.sip.example"
        assert decision.caller_id == CALLER

    @pytest.mark.asyncio
    async def test_schedule_closed_monday_evening(self, resolver, seeded):
        decision = await resolver.resolve(_ctx(seeded.acme_id, seeded.schedule_did, instant=MONDAY_8PM))

        assert isinstance(decision, HangupDecision)
        assert decision.message == "Our office is closed."

    @pytest.mark.asyncio
    async def test_special_hours_exception_opens_saturday(self, resolver, seeded, db_session):
        schedule = BusinessHoursSchedule(
            organization_id=seeded.acme_id,
            name="Stocktake",
            status=EntityStatus.ACTIVE,
            open_hours_action={"type": "extension", "target_id": seeded.ext_102},
            closed_hours_action={},
            days=[
                BusinessHoursDay(
                    day_of_week=d,
                    enabled=d < 5,
                    ranges=[BusinessHoursTimeRange(start_time=time(9), end_time=time(17))] if d < 5 else [],
                )
                for d in range(7)
            ],
            exceptions=[
                BusinessHoursException(
                    date=date(2025, 1, 11),
                    name="Stocktake",
                    type=ScheduleExceptionType.SPECIAL_HOURS,
                    ranges=[BusinessHoursExceptionRange(start_time=time(10), end_time=time(14))],
                )
            ],
        )
        db_session.add(schedule)
        await db_session.flush()
        await _add_did(
            db_session, seeded.acme_id, "+12125557777", RoutingType.BUSINESS_HOURS, {"schedule_id": schedule.id}
        )

        saturday_11 = datetime(2025, 1, 11, 11, 0, tzinfo=NY)
        saturday_15 = datetime(2025, 1, 11, 15, 0, tzinfo=NY)

        opened = await resolver.resolve(_ctx(seeded.acme_id, "+12125557777", instant=saturday_11))
        assert isinstance(opened, DialDecision)
        assert opened.endpoints[0].address == "sip:102@acme.sip.example"

        closed = await resolver.resolve(_ctx(seeded.acme_id, "+12125557777", instant=saturday_15))
        assert isinstance(closed, HangupDecision)
        assert closed.message == CLOSED_MESSAGE

    @pytest.mark.asyncio
    async def test_extension_did_dials_sip(self, resolver, seeded):
        decision = await resolver.resolve(_ctx(seeded.acme_id, seeded.extension_did))

        assert isinstance(decision, DialDecision)
        assert decision.endpoints[0].kind is EndpointKind.SIP

    @pytest.mark.asyncio
    async def test_unknown_did_not_found(self, resolver, seeded):
        with pytest.raises(NotFound):
            await resolver.resolve(_ctx(seeded.acme_id, "+19998887777"))

    @pytest.mark.asyncio
    async def test_other_tenants_did_not_found(self, resolver, seeded):
        with pytest.raises(NotFound):
            await resolver.resolve(_ctx(seeded.acme_id, seeded.globex_did))

    @pytest.mark.asyncio
    async def test_cross_tenant_reference_is_configuration_error(self, resolver, seeded, db_session):
        await _add_did(
            db_session,
            seeded.acme_id,
            "+12125556666",
            RoutingType.EXTENSION,
            {"extension_id": seeded.globex_ext_201},
        )
        with pytest.raises(ConfigurationError):
            await resolver.resolve(_ctx(seeded.acme_id, "+12125556666"))

    @pytest.mark.asyncio
    async def test_inactive_extension_unavailable(self, resolver, seeded, db_session):
        await _add_did(
            db_session,
            seeded.acme_id,
            "+12125555555",
            RoutingType.EXTENSION,
            {"extension_id": seeded.ext_103_inactive},
        )
        with pytest.raises(Unavailable):
            await resolver.resolve(_ctx(seeded.acme_id, "+12125555555"))

    @pytest.mark.asyncio
    async def test_forward_cycle_stops_at_depth_limit(self, resolver, seeded, db_session):
        first = await _add_extension(
            db_session, seeded.acme_id, "700", ExtensionType.FORWARD, configuration={"forward_to": "701"}
        )
        await _add_extension(
            db_session, seeded.acme_id, "701", ExtensionType.FORWARD, configuration={"forward_to": "700"}
        )
        await _add_did(db_session, seeded.acme_id, "+12125554444", RoutingType.EXTENSION, {"extension_id": first.id})

        with pytest.raises(ConfigurationError):
            await resolver.resolve(_ctx(seeded.acme_id, "+12125554444"))

    @pytest.mark.asyncio
    async def test_conference_room(self, resolver, seeded, db_session):
        room = ConferenceRoom(
            organization_id=seeded.acme_id,
            name="Standup",
            max_participants=10,
            mute_on_entry=True,
        )
        db_session.add(room)
        await db_session.flush()
        await _add_did(
            db_session, seeded.acme_id, "+12125553333", RoutingType.CONFERENCE_ROOM, {"conference_room_id": room.id}
        )

        decision = await resolver.resolve(_ctx(seeded.acme_id, "+12125553333"))
        assert decision == ConferenceDecision(
            identifier=f"conf_{room.id}", max_participants=10, muted=True, beep=False
        )


class TestInternalResolution:
    @pytest.mark.asyncio
    async def test_classify(self, resolver, seeded):
        assert await resolver.classify("101", "102") is CallDirection.INTERNAL
        assert await resolver.classify("101", "+14155550123") is CallDirection.INTERNAL
        assert await resolver.classify("101", "999") is CallDirection.INVALID
        assert await resolver.classify(CALLER, seeded.ring_group_did) is CallDirection.INBOUND
        assert await resolver.classify(CALLER, "+14155550123") is CallDirection.INVALID

    @pytest.mark.asyncio
    async def test_extension_to_extension(self, resolver, seeded):
        decision = await resolver.resolve(
            _ctx(seeded.acme_id, "102", caller="101", direction=CallDirection.INTERNAL)
        )
        assert decision.endpoints[0].address == "sip:102@acme.sip.example"
        assert decision.caller_id == "101"

    @pytest.mark.asyncio
    async def test_extension_dialing_external_number_refused(self, resolver, seeded):
        decision = await resolver.resolve(
            _ctx(seeded.acme_id, "+14155550123", caller="101", direction=CallDirection.INTERNAL)
        )
        assert isinstance(decision, HangupDecision)
        assert decision.reason == "outbound_refused"

    @pytest.mark.asyncio
    async def test_external_caller_dialing_external_number(self, resolver, seeded):
        decision = await resolver.resolve(
            _ctx(seeded.acme_id, "+14155550123", direction=CallDirection.INVALID)
        )
        assert decision.reason == "security_violation"

    @pytest.mark.asyncio
    async def test_forward_to_external_number(self, resolver, seeded, db_session):
        await _add_extension(
            db_session, seeded.acme_id, "710", ExtensionType.FORWARD, configuration={"forward_to": "+14155550123"}
        )
        decision = await resolver.resolve(
            _ctx(seeded.acme_id, "710", caller="101", direction=CallDirection.INTERNAL)
        )
        assert decision.endpoints[0].kind is EndpointKind.NUMBER
        assert decision.endpoints[0].address == "+14155550123"

    @pytest.mark.asyncio
    async def test_forward_without_destination(self, resolver, seeded, db_session):
        await _add_extension(db_session, seeded.acme_id, "711", ExtensionType.FORWARD, configuration={})
        with pytest.raises(Unavailable):
            await resolver.resolve(_ctx(seeded.acme_id, "711", caller="101", direction=CallDirection.INTERNAL))

    @pytest.mark.asyncio
    async def test_ai_assistant_service(self, resolver, seeded, db_session):
        await _add_extension(
            db_session,
            seeded.acme_id,
            "800",
            ExtensionType.AI_ASSISTANT,
            service_url="wss://ai.example.com/stream",
            service_token="tok",
            configuration={"provider": "vapi"},
        )
        decision = await resolver.resolve(
            _ctx(seeded.acme_id, "800", caller="101", direction=CallDirection.INTERNAL)
        )
        assert isinstance(decision, ServiceDecision)
        assert decision.provider == "vapi"
        assert decision.extension_number == "800"

    @pytest.mark.asyncio
    async def test_service_without_url_unavailable(self, resolver, seeded, db_session):
        await _add_extension(db_session, seeded.acme_id, "801", ExtensionType.CUSTOM_LOGIC, configuration={})
        with pytest.raises(Unavailable):
            await resolver.resolve(_ctx(seeded.acme_id, "801", caller="101", direction=CallDirection.INTERNAL))


class TestRingGroups:
    async def _sequential_group(self, db_session, seeded, with_fallback: bool = True) -> RingGroup:
        group = RingGroup(
            organization_id=seeded.acme_id,
            name="Support",
            strategy=RingGroupStrategy.SEQUENTIAL,
            timeout=15,
            ring_turns=1,
            fallback_action=DestinationType.HANGUP if with_fallback else None,
            status=EntityStatus.ACTIVE,
        )
        db_session.add(group)
        await db_session.flush()
        db_session.add_all(
            [
                RingGroupMember(ring_group_id=group.id, extension_id=seeded.ext_101, priority=1),
                RingGroupMember(ring_group_id=group.id, extension_id=seeded.ext_102, priority=2),
                RingGroupMember(ring_group_id=group.id, extension_id=seeded.ext_103_inactive, priority=3),
            ]
        )
        await db_session.flush()
        await _add_did(db_session, seeded.acme_id, "+12125552222", RoutingType.RING_GROUP, {"ring_group_id": group.id})
        return group

    @pytest.mark.asyncio
    async def test_sequential_rings_first_member_with_callback(self, resolver, seeded, db_session):
        group = await self._sequential_group(db_session, seeded)
        decision = await resolver.resolve(_ctx(seeded.acme_id, "+12125552222"))

        assert len(decision.endpoints) == 1
        assert decision.endpoints[0].address == "sip:101@acme.sip.example"
        assert decision.action_url == (
            f"{BASE_URL}/voice/ring-group-callback?ring_group_id={group.id}&offset=0&order=101%2C102"
        )

    @pytest.mark.asyncio
    async def test_continue_advances_then_falls_back(self, resolver, seeded, db_session):
        group = await self._sequential_group(db_session, seeded)
        ctx = _ctx(seeded.acme_id, "+12125552222")

        second = await resolver.continue_ring_group(ctx, group.id, ["101", "102"], 0, "no-answer")
        assert second.endpoints[0].address == "sip:102@acme.sip.example"
        assert "offset=1" in second.action_url

        exhausted = await resolver.continue_ring_group(ctx, group.id, ["101", "102"], 1, "busy")
        assert isinstance(exhausted, HangupDecision)
        assert exhausted.message == NO_AGENTS_MESSAGE

    @pytest.mark.asyncio
    async def test_continue_skips_member_deactivated_mid_call(self, resolver, seeded, db_session):
        group = await self._sequential_group(db_session, seeded)
        ctx = _ctx(seeded.acme_id, "+12125552222")

        decision = await resolver.continue_ring_group(ctx, group.id, ["101", "103", "102"], 0, "no-answer")
        assert decision.endpoints[0].address == "sip:102@acme.sip.example"
        assert "offset=2" in decision.action_url

    @pytest.mark.asyncio
    async def test_answered_call_ends(self, resolver, seeded, db_session):
        group = await self._sequential_group(db_session, seeded)
        decision = await resolver.continue_ring_group(
            _ctx(seeded.acme_id, "+12125552222"), group.id, ["101", "102"], 0, "completed"
        )
        assert decision == HangupDecision(reason="answered")

    @pytest.mark.asyncio
    async def test_locked_group_uses_fallback(self, resolver, seeded, db_session, state_store, routing_config):
        group = await self._sequential_group(db_session, seeded)
        guard = ConcurrencyGuard(state_store, routing_config)

        async with guard.ring_group(seeded.acme_id, group.id):
            decision = await resolver.resolve(_ctx(seeded.acme_id, "+12125552222"))

        assert isinstance(decision, HangupDecision)
        assert decision.reason == "ring_group_fallback"

    @pytest.mark.asyncio
    async def test_empty_group_without_fallback_unavailable(self, resolver, seeded, db_session):
        group = RingGroup(
            organization_id=seeded.acme_id,
            name="Empty",
            strategy=RingGroupStrategy.SIMULTANEOUS,
            status=EntityStatus.ACTIVE,
        )
        db_session.add(group)
        await db_session.flush()
        await _add_did(db_session, seeded.acme_id, "+12125551111", RoutingType.RING_GROUP, {"ring_group_id": group.id})

        with pytest.raises(Unavailable):
            await resolver.resolve(_ctx(seeded.acme_id, "+12125551111"))

    async def _group_with_foreign_member(self, db_session, seeded, with_fallback: bool) -> RingGroup:
        group = RingGroup(
            organization_id=seeded.acme_id,
            name="Misconfigured",
            strategy=RingGroupStrategy.SEQUENTIAL,
            fallback_action=DestinationType.HANGUP if with_fallback else None,
            status=EntityStatus.ACTIVE,
        )
        db_session.add(group)
        await db_session.flush()
        db_session.add_all(
            [
                RingGroupMember(ring_group_id=group.id, extension_id=seeded.ext_101, priority=1),
                RingGroupMember(ring_group_id=group.id, extension_id=seeded.globex_ext_201, priority=2),
            ]
        )
        await db_session.flush()
        await _add_did(db_session, seeded.acme_id, "+12125553333", RoutingType.RING_GROUP, {"ring_group_id": group.id})
        return group

    @pytest.mark.asyncio
    async def test_foreign_member_uses_fallback(self, resolver, seeded, db_session):
        await self._group_with_foreign_member(db_session, seeded, with_fallback=True)

        decision = await resolver.resolve(_ctx(seeded.acme_id, "+12125553333"))
        assert isinstance(decision, HangupDecision)
        assert decision.reason == "ring_group_fallback"

    @pytest.mark.asyncio
    async def test_foreign_member_without_fallback_is_configuration_error(self, resolver, seeded, db_session):
        await self._group_with_foreign_member(db_session, seeded, with_fallback=False)

        with pytest.raises(ConfigurationError):
            await resolver.resolve(_ctx(seeded.acme_id, "+12125553333"))

    @pytest.mark.asyncio
    async def test_continue_with_foreign_member_uses_fallback(self, resolver, seeded, db_session):
        group = await self._group_with_foreign_member(db_session, seeded, with_fallback=True)

        decision = await resolver.continue_ring_group(
            _ctx(seeded.acme_id, "+12125553333"), group.id, ["101", "201"], 0, "no-answer"
        )
        assert isinstance(decision, HangupDecision)
        assert decision.reason == "ring_group_fallback"


class TestIvrMenus:
    async def _menu(self, db_session, seeded) -> IvrMenu:
        menu = IvrMenu(
            organization_id=seeded.acme_id,
            name="Main",
            tts_text="Press 1 for sales.",
            max_turns=2,
            failover_destination_type=DestinationType.HANGUP,
            options=[
                IvrMenuOption(
                    input_digits="1",
                    destination_type=DestinationType.EXTENSION,
                    destination_id=seeded.ext_101,
                    priority=1,
                ),
                IvrMenuOption(
                    input_digits="2",
                    destination_type=DestinationType.RING_GROUP,
                    destination_id=seeded.sales_group,
                    priority=2,
                ),
            ],
        )
        db_session.add(menu)
        await db_session.flush()
        await _add_did(db_session, seeded.acme_id, "+12125550101", RoutingType.IVR_MENU, {"ivr_menu_id": menu.id})
        return menu

    @pytest.mark.asyncio
    async def test_did_presents_menu(self, resolver, seeded, db_session):
        menu = await self._menu(db_session, seeded)
        decision = await resolver.resolve(_ctx(seeded.acme_id, "+12125550101"))

        assert isinstance(decision, MenuDecision)
        assert decision.prompt_text == "Press 1 for sales."
        assert decision.action_url == f"{BASE_URL}/voice/ivr?menu_id={menu.id}"
        assert decision.preface is None

    @pytest.mark.asyncio
    async def test_matching_digits_route_to_option(self, resolver, seeded, db_session):
        menu = await self._menu(db_session, seeded)
        ctx = _ctx(seeded.acme_id, "+12125550101")

        decision = await resolver.resolve_menu_input(ctx, menu.id, "2")
        assert isinstance(decision, DialDecision)
        assert decision.ring_group_id == seeded.sales_group

    @pytest.mark.asyncio
    async def test_invalid_digits_replay_then_fail_over(self, resolver, seeded, db_session):
        menu = await self._menu(db_session, seeded)
        ctx = _ctx(seeded.acme_id, "+12125550101")

        replay = await resolver.resolve_menu_input(ctx, menu.id, "9")
        assert isinstance(replay, MenuDecision)
        assert replay.preface == INVALID_OPTION_MESSAGE

        failover = await resolver.resolve_menu_input(ctx, menu.id, "9")
        assert isinstance(failover, HangupDecision)
        assert failover.reason == "configured_hangup"

    @pytest.mark.asyncio
    async def test_turns_are_counted_per_call(self, resolver, seeded, db_session):
        menu = await self._menu(db_session, seeded)

        await resolver.resolve_menu_input(_ctx(seeded.acme_id, "+12125550101", call_id="a"), menu.id, "9")
        other = await resolver.resolve_menu_input(_ctx(seeded.acme_id, "+12125550101", call_id="b"), menu.id, "9")
        assert isinstance(other, MenuDecision)

    async def _menu_with_dead_option(self, db_session, seeded, failover: bool) -> IvrMenu:
        menu = IvrMenu(
            organization_id=seeded.acme_id,
            name="Support",
            tts_text="Press 3 for support.",
            max_turns=3,
            failover_destination_type=DestinationType.EXTENSION if failover else None,
            failover_destination_id=seeded.ext_101 if failover else None,
            options=[
                IvrMenuOption(
                    input_digits="3",
                    destination_type=DestinationType.EXTENSION,
                    destination_id=seeded.ext_103_inactive,
                    priority=1,
                ),
            ],
        )
        db_session.add(menu)
        await db_session.flush()
        return menu

    @pytest.mark.asyncio
    async def test_unavailable_option_uses_menu_failover(self, resolver, seeded, db_session):
        menu = await self._menu_with_dead_option(db_session, seeded, failover=True)

        decision = await resolver.resolve_menu_input(_ctx(seeded.acme_id, "+12125550101"), menu.id, "3")
        assert isinstance(decision, DialDecision)
        assert decision.endpoints[0].address == "sip:101@acme.sip.example"

    @pytest.mark.asyncio
    async def test_unavailable_option_without_failover_raises(self, resolver, seeded, db_session):
        menu = await self._menu_with_dead_option(db_session, seeded, failover=False)

        with pytest.raises(Unavailable):
            await resolver.resolve_menu_input(_ctx(seeded.acme_id, "+12125550101"), menu.id, "3")
