"""
Routing decisions: what the resolver hands to the ResponseBuilder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class EndpointKind(str, Enum):
    """How a dial endpoint is addressed."""

    EXTENSION = "extension"
    NUMBER = "number"
    SIP = "sip"


@dataclass(frozen=True)
class DialEndpoint:
    kind: EndpointKind
    address: str

    @classmethod
    def sip(cls, uri: str) -> "DialEndpoint":
        uri = uri.strip()
        if not uri.lower().startswith(("sip:", "sips:")):
            uri = f"sip:{uri}"
        return cls(kind=EndpointKind.SIP, address=uri)

    @classmethod
    def number(cls, number: str) -> "DialEndpoint":
        return cls(kind=EndpointKind.NUMBER, address=number)

    @classmethod
    def extension(cls, extension_number: str) -> "DialEndpoint":
        return cls(kind=EndpointKind.EXTENSION, address=extension_number)


@dataclass(frozen=True)
class DialDecision:
    """Ring one endpoint, or several in parallel."""

    endpoints: tuple[DialEndpoint, ...]
    timeout: int
    caller_id: str | None = None
    action_url: str | None = None
    ring_group_id: int | None = None


@dataclass(frozen=True)
class ServiceDecision:
    """Hand the call to an IVR / AI / custom-logic service."""

    provider: str
    service_url: str
    timeout: int
    token: str | None = field(default=None, repr=False)
    params: dict[str, Any] = field(default_factory=dict)
    extension_number: str | None = None


@dataclass(frozen=True)
class ConferenceDecision:
    identifier: str
    max_participants: int
    muted: bool = False
    beep: bool = False


@dataclass(frozen=True)
class MenuDecision:
    """Present an IVR menu and collect digits."""

    menu_id: int
    action_url: str
    timeout: int
    max_digits: int
    prompt_text: str | None = None
    prompt_voice: str | None = None
    audio_url: str | None = None
    preface: str | None = None


@dataclass(frozen=True)
class HangupDecision:
    """End the call, optionally announcing ``message`` first."""

    message: str | None = None
    reason: str | None = None


RoutingDecision = Union[DialDecision, ServiceDecision, ConferenceDecision, MenuDecision, HangupDecision]


__all__ = [
    "ConferenceDecision",
    "DialDecision",
    "DialEndpoint",
    "EndpointKind",
    "HangupDecision",
    "MenuDecision",
    "RoutingDecision",
    "ServiceDecision",
]
