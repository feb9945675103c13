"""
Unit tests for typed routing targets.
"""

import pytest

from callrouting.routing.models import DestinationType, ExtensionType, RoutingType
from callrouting.routing.targets import (
    ConferenceTarget,
    ExtensionTarget,
    ForwardTarget,
    HangupTarget,
    IvrMenuTarget,
    RingGroupTarget,
    ScheduleTarget,
    ServiceTarget,
    load_target,
    parse_destination,
    parse_did_routing,
    parse_extension_configuration,
    parse_schedule_action,
)
from callrouting.shared.exceptions import ConfigurationError


class TestParseDidRouting:
    @pytest.mark.parametrize(
        ("routing_type", "config", "expected"),
        [
            (RoutingType.EXTENSION, {"extension_id": 4}, ExtensionTarget(extension_id=4)),
            (RoutingType.RING_GROUP, {"ring_group_id": "7"}, RingGroupTarget(ring_group_id=7)),
            (RoutingType.BUSINESS_HOURS, {"schedule_id": 2}, ScheduleTarget(schedule_id=2)),
            (
                RoutingType.BUSINESS_HOURS,
                {"business_hours_schedule_id": 3},
                ScheduleTarget(schedule_id=3),
            ),
            (
                RoutingType.CONFERENCE_ROOM,
                {"conference_room_id": 9},
                ConferenceTarget(conference_room_id=9),
            ),
            (RoutingType.IVR_MENU, {"ivr_id": 5}, IvrMenuTarget(ivr_menu_id=5)),
        ],
    )
    def test_each_kind_parses(self, routing_type, config, expected):
        assert parse_did_routing(routing_type, config) == expected

    def test_missing_id_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            parse_did_routing(RoutingType.RING_GROUP, {})

    def test_non_integer_id_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            parse_did_routing(RoutingType.EXTENSION, {"extension_id": "abc"})

    def test_unknown_routing_type(self):
        with pytest.raises(ConfigurationError):
            parse_did_routing("voicemail", {})


class TestParseExtensionConfiguration:
    def test_user_has_no_target(self):
        assert parse_extension_configuration(ExtensionType.USER, {}) is None

    def test_ai_assistant_passes_service_through(self):
        target = parse_extension_configuration(
            ExtensionType.AI_ASSISTANT,
            {"provider": "vapi"},
            service_url="wss://ai.example.com/stream",
            service_token="s3cret",
            service_params={"voice": "nova"},
        )
        assert isinstance(target, ServiceTarget)
        assert target.provider == "vapi"
        assert target.service_url == "wss://ai.example.com/stream"
        assert target.token == "s3cret"
        assert target.params == {"voice": "nova"}
        assert "s3cret" not in repr(target)

    def test_ivr_with_menu_id_targets_menu(self):
        target = parse_extension_configuration(ExtensionType.IVR, {"ivr_id": 12})
        assert target == IvrMenuTarget(ivr_menu_id=12)

    def test_ivr_without_menu_is_service(self):
        target = parse_extension_configuration(
            ExtensionType.IVR, {}, service_url="https://ivr.example.com"
        )
        assert isinstance(target, ServiceTarget)
        assert target.provider == "ivr"

    def test_forward(self):
        target = parse_extension_configuration(ExtensionType.FORWARD, {"forward_to": " +14155550100 "})
        assert target == ForwardTarget(forward_to="+14155550100")

    def test_ring_group_alias_requires_id(self):
        with pytest.raises(ConfigurationError):
            parse_extension_configuration(ExtensionType.RING_GROUP, {})


class TestDestinations:
    def test_hangup_needs_no_id(self):
        assert parse_destination(DestinationType.HANGUP, None, "Bye") == HangupTarget(message="Bye")

    def test_ai_assistant_destination_is_extension(self):
        assert parse_destination("ai_assistant", 3) == ExtensionTarget(extension_id=3)

    def test_empty_type_means_no_destination(self):
        assert parse_destination(None, None) is None
        assert parse_schedule_action({}) is None

    def test_schedule_action(self):
        assert parse_schedule_action({"type": "ring_group", "target_id": "4"}) == RingGroupTarget(
            ring_group_id=4
        )

    def test_destination_without_id(self):
        with pytest.raises(ConfigurationError):
            parse_destination(DestinationType.EXTENSION, None)


class TestLoadTarget:
    def test_dump_and_load(self):
        target = ServiceTarget(provider="ivr", service_url="https://ivr.example.com", params={"a": 1})
        assert load_target(target.model_dump()) == target

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError):
            load_target({"kind": "teleport"})
