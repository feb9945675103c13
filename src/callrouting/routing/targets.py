"""
Typed routing targets.

Routing configuration is stored as loosely-shaped JSON on DIDs, extensions,
schedules, ring-group fallbacks and IVR options. It is parsed exactly once, at
load time, into this closed set of variants; nothing past the repository ever
sees the raw mapping.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from callrouting.routing.models import DestinationType, ExtensionType, RoutingType
from callrouting.shared.exceptions import ConfigurationError


class _Target(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ExtensionTarget(_Target):
    kind: Literal["extension"] = "extension"
    extension_id: int


class RingGroupTarget(_Target):
    kind: Literal["ring_group"] = "ring_group"
    ring_group_id: int


class ScheduleTarget(_Target):
    kind: Literal["business_hours"] = "business_hours"
    schedule_id: int


class ConferenceTarget(_Target):
    kind: Literal["conference_room"] = "conference_room"
    conference_room_id: int


class IvrMenuTarget(_Target):
    kind: Literal["ivr_menu"] = "ivr_menu"
    ivr_menu_id: int


class ServiceTarget(_Target):
    """IVR / AI assistant / custom logic endpoint, passed through verbatim."""

    kind: Literal["service"] = "service"
    provider: str
    service_url: str | None = None
    token: str | None = Field(default=None, repr=False)
    params: dict[str, Any] = Field(default_factory=dict)


class ForwardTarget(_Target):
    kind: Literal["forward"] = "forward"
    forward_to: str = ""


class HangupTarget(_Target):
    kind: Literal["hangup"] = "hangup"
    message: str | None = None


RoutingTarget = Annotated[
    Union[
        ExtensionTarget,
        RingGroupTarget,
        ScheduleTarget,
        ConferenceTarget,
        IvrMenuTarget,
        ServiceTarget,
        ForwardTarget,
        HangupTarget,
    ],
    Field(discriminator="kind"),
]

_target_adapter: TypeAdapter[Any] = TypeAdapter(RoutingTarget)


def load_target(data: Mapping[str, Any]) -> RoutingTarget:
    """Rebuild a target from its serialized (``model_dump``) form."""
    try:
        return _target_adapter.validate_python(dict(data))
    except ValidationError as exc:
        raise ConfigurationError("Malformed routing target", details={"errors": exc.errors()}) from exc


def _require_id(config: Mapping[str, Any], *keys: str, owner: str) -> int:
    for key in keys:
        value = config.get(key)
        if value is None or value == "":
            continue
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"{owner}: '{key}' must be an integer id",
                details={"key": key},
            ) from exc
    raise ConfigurationError(f"{owner}: missing {' / '.join(keys)}", details={"keys": list(keys)})


def parse_did_routing(routing_type: RoutingType | str, config: Mapping[str, Any] | None) -> RoutingTarget:
    """Parse a DID's ``routing_type`` + ``routing_config`` pair."""
    config = config or {}
    try:
        routing_type = RoutingType(routing_type)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown routing type: {routing_type}") from exc

    match routing_type:
        case RoutingType.EXTENSION:
            return ExtensionTarget(extension_id=_require_id(config, "extension_id", owner="DID"))
        case RoutingType.RING_GROUP:
            return RingGroupTarget(ring_group_id=_require_id(config, "ring_group_id", owner="DID"))
        case RoutingType.BUSINESS_HOURS:
            return ScheduleTarget(
                schedule_id=_require_id(
                    config, "business_hours_schedule_id", "schedule_id", owner="DID"
                )
            )
        case RoutingType.CONFERENCE_ROOM:
            return ConferenceTarget(
                conference_room_id=_require_id(config, "conference_room_id", owner="DID")
            )
        case RoutingType.IVR_MENU:
            return IvrMenuTarget(ivr_menu_id=_require_id(config, "ivr_menu_id", "ivr_id", owner="DID"))


def parse_destination(
    destination_type: DestinationType | str | None,
    target_id: int | None,
    message: str | None = None,
) -> RoutingTarget | None:
    """Parse a (type, id) destination reference; ``None`` when no type is set."""
    if destination_type is None or destination_type == "":
        return None
    try:
        destination_type = DestinationType(destination_type)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown destination type: {destination_type}") from exc

    if destination_type is DestinationType.HANGUP:
        return HangupTarget(message=message)
    if target_id is None:
        raise ConfigurationError(f"Destination '{destination_type.value}' has no target id")

    match destination_type:
        case DestinationType.EXTENSION | DestinationType.AI_ASSISTANT:
            return ExtensionTarget(extension_id=target_id)
        case DestinationType.RING_GROUP:
            return RingGroupTarget(ring_group_id=target_id)
        case DestinationType.BUSINESS_HOURS:
            return ScheduleTarget(schedule_id=target_id)
        case DestinationType.CONFERENCE_ROOM:
            return ConferenceTarget(conference_room_id=target_id)
        case DestinationType.IVR_MENU:
            return IvrMenuTarget(ivr_menu_id=target_id)
    raise ConfigurationError(f"Unsupported destination type: {destination_type.value}")


def parse_schedule_action(action: Mapping[str, Any] | None) -> RoutingTarget | None:
    """Parse a schedule's open/closed action, e.g. ``{"type": "extension", "target_id": 3}``."""
    if not action:
        return None
    target_id = action.get("target_id")
    try:
        target_id = int(target_id) if target_id not in (None, "") else None
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("Schedule action target_id must be an integer id") from exc
    return parse_destination(action.get("type"), target_id, message=action.get("message"))


def parse_extension_configuration(
    extension_type: ExtensionType,
    configuration: Mapping[str, Any] | None,
    service_url: str | None = None,
    service_token: str | None = None,
    service_params: Mapping[str, Any] | None = None,
) -> RoutingTarget | None:
    """Parse the kind-specific configuration of an extension.

    User extensions are dialed directly and carry no target.
    """
    configuration = configuration or {}
    params = dict(service_params or configuration.get("params") or {})

    match extension_type:
        case ExtensionType.USER:
            return None
        case ExtensionType.RING_GROUP:
            return RingGroupTarget(
                ring_group_id=_require_id(configuration, "ring_group_id", owner="Extension")
            )
        case ExtensionType.CONFERENCE:
            return ConferenceTarget(
                conference_room_id=_require_id(configuration, "conference_room_id", owner="Extension")
            )
        case ExtensionType.IVR:
            if configuration.get("ivr_menu_id") or configuration.get("ivr_id"):
                return IvrMenuTarget(
                    ivr_menu_id=_require_id(configuration, "ivr_menu_id", "ivr_id", owner="Extension")
                )
            return ServiceTarget(
                provider=str(configuration.get("provider") or "ivr"),
                service_url=service_url or configuration.get("service_url"),
                token=service_token,
                params=params,
            )
        case ExtensionType.AI_ASSISTANT | ExtensionType.CUSTOM_LOGIC:
            default_provider = extension_type.value
            return ServiceTarget(
                provider=str(configuration.get("provider") or default_provider),
                service_url=service_url or configuration.get("service_url"),
                token=service_token,
                params=params,
            )
        case ExtensionType.FORWARD:
            return ForwardTarget(forward_to=str(configuration.get("forward_to") or "").strip())
    raise ConfigurationError(f"Unsupported extension type: {extension_type}")


__all__ = [
    "ConferenceTarget",
    "ExtensionTarget",
    "ForwardTarget",
    "HangupTarget",
    "IvrMenuTarget",
    "RingGroupTarget",
    "RoutingTarget",
    "ScheduleTarget",
    "ServiceTarget",
    "load_target",
    "parse_destination",
    "parse_did_routing",
    "parse_extension_configuration",
    "parse_schedule_action",
]
