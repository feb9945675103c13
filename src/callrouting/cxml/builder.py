"""
CXML (Cloudonix call-control markup) rendering.

Every routing decision maps to one document. Text and attribute values are
escaped on the way in; nothing caller- or configuration-supplied is
interpolated raw.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from callrouting.routing.config import RoutingConfig, get_routing_config
from callrouting.routing.decisions import (
    ConferenceDecision,
    DialDecision,
    DialEndpoint,
    EndpointKind,
    HangupDecision,
    MenuDecision,
    RoutingDecision,
    ServiceDecision,
)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
MEDIA_TYPE = "application/xml"

UNAUTHORIZED_MESSAGE = "Unauthorized. Authentication failed."
DEFAULT_ERROR_MESSAGE = "We are unable to connect your call at this time. Goodbye."


def _xml_escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _attrs(attributes: Mapping[str, Any]) -> str:
    parts = []
    for name, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        parts.append(f'{name}="{_xml_escape(str(value))}"')
    return (" " + " ".join(parts)) if parts else ""


def _element(tag: str, attributes: Mapping[str, Any] | None = None, text: str | None = None) -> str:
    attr_string = _attrs(attributes or {})
    if text is None:
        return f"<{tag}{attr_string}/>"
    return f"<{tag}{attr_string}>{_xml_escape(text)}</{tag}>"


def _container(tag: str, attributes: Mapping[str, Any] | None, children: list[str]) -> str:
    inner = "\n".join(f"    {child}" for child in children)
    return f"<{tag}{_attrs(attributes or {})}>\n{inner}\n  </{tag}>"


class CxmlDocument:
    """Ordered list of verbs inside one <Response>."""

    def __init__(self) -> None:
        self._verbs: list[str] = []

    def __len__(self) -> int:
        return len(self._verbs)

    def append(self, verb: str) -> "CxmlDocument":
        self._verbs.append(verb)
        return self

    def say(self, text: str, voice: str | None = None, language: str | None = None) -> "CxmlDocument":
        return self.append(_element("Say", {"voice": voice, "language": language}, text))

    def hangup(self) -> "CxmlDocument":
        return self.append(_element("Hangup"))

    def render(self) -> str:
        body = "\n".join(f"  {verb}" for verb in self._verbs)
        return f"{XML_DECLARATION}\n<Response>\n{body}\n</Response>"

    def __str__(self) -> str:
        return self.render()


def _endpoint_element(endpoint: DialEndpoint) -> str:
    match endpoint.kind:
        case EndpointKind.SIP:
            return _element("Sip", None, endpoint.address)
        case EndpointKind.NUMBER | EndpointKind.EXTENSION:
            return _element("Number", None, endpoint.address)
    raise ValueError(f"Unsupported endpoint kind: {endpoint.kind}")


class ResponseBuilder:
    """Maps a RoutingDecision to a CXML document."""

    def __init__(self, config: RoutingConfig | None = None) -> None:
        self._config = config or get_routing_config()

    def build(self, decision: RoutingDecision) -> CxmlDocument:
        doc = CxmlDocument()

        match decision:
            case DialDecision():
                doc.append(self._dial(decision))

            case ServiceDecision():
                doc.append(self._service(decision))

            case ConferenceDecision():
                doc.append(
                    _container(
                        "Dial",
                        None,
                        [
                            _element(
                                "Conference",
                                {
                                    "maxParticipants": decision.max_participants,
                                    "muted": decision.muted,
                                    "beep": decision.beep,
                                },
                                decision.identifier,
                            )
                        ],
                    )
                )

            case MenuDecision():
                doc.append(self._gather(decision))

            case HangupDecision():
                if decision.message:
                    doc.say(decision.message, self._config.say_voice, self._config.say_language)
                doc.hangup()

            case _:
                raise ValueError(f"Unsupported routing decision: {decision!r}")

        return doc

    def say_and_hangup(self, message: str | None = None) -> CxmlDocument:
        """Error document for a live call leg."""
        doc = CxmlDocument()
        doc.say(message or DEFAULT_ERROR_MESSAGE, self._config.say_voice, self._config.say_language)
        return doc.hangup()

    def unauthorized(self) -> CxmlDocument:
        doc = CxmlDocument()
        doc.say(UNAUTHORIZED_MESSAGE, self._config.say_voice, self._config.say_language)
        return doc.hangup()

    def hangup(self) -> CxmlDocument:
        return CxmlDocument().hangup()

    def _dial(self, decision: DialDecision) -> str:
        attributes: dict[str, Any] = {
            "timeout": decision.timeout,
            "callerId": decision.caller_id,
        }
        if decision.action_url:
            attributes["action"] = decision.action_url
            attributes["method"] = "POST"
        return _container("Dial", attributes, [_endpoint_element(e) for e in decision.endpoints])

    def _service(self, decision: ServiceDecision) -> str:
        url = decision.service_url
        if url.lower().startswith(("sip:", "sips:")):
            return _container("Dial", {"timeout": decision.timeout}, [_element("Sip", None, url)])

        parameters = [
            _element("Parameter", {"name": str(name), "value": value})
            for name, value in decision.params.items()
        ]
        if decision.token:
            parameters.append(_element("Parameter", {"name": "token", "value": decision.token}))
        if decision.extension_number:
            parameters.append(
                _element("Parameter", {"name": "extension", "value": decision.extension_number})
            )

        stream_attrs = {"url": url, "name": decision.provider}
        if parameters:
            inner = "\n".join(f"      {p}" for p in parameters)
            stream = f"<Stream{_attrs(stream_attrs)}>\n{inner}\n    </Stream>"
        else:
            stream = _element("Stream", stream_attrs)
        return _container("Connect", None, [stream])

    def _gather(self, decision: MenuDecision) -> str:
        children: list[str] = []
        if decision.preface:
            children.append(
                _element(
                    "Say",
                    {"voice": self._config.say_voice, "language": self._config.say_language},
                    decision.preface,
                )
            )
        if decision.audio_url:
            children.append(_element("Play", None, decision.audio_url))
        elif decision.prompt_text:
            children.append(
                _element(
                    "Say",
                    {
                        "voice": decision.prompt_voice or self._config.say_voice,
                        "language": self._config.say_language,
                    },
                    decision.prompt_text,
                )
            )
        return _container(
            "Gather",
            {
                "action": decision.action_url,
                "method": "POST",
                "numDigits": decision.max_digits,
                "timeout": decision.timeout,
                "finishOnKey": "#",
            },
            children,
        )


__all__ = ["CxmlDocument", "MEDIA_TYPE", "ResponseBuilder"]
