"""
Real-time call-control handling.

Every outcome of a call-control webhook is a CXML document served with HTTP
200: authentication, rate-limit and routing failures are announced to the
caller and the call is ended, never surfaced as an HTTP error on a live leg.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from callrouting.cxml.builder import MEDIA_TYPE, CxmlDocument, ResponseBuilder
from callrouting.routing.decisions import RoutingDecision
from callrouting.routing.locks import ConcurrencyGuard
from callrouting.routing.numbers import normalize_number
from callrouting.routing.resolver import CallContext, CallDirection, RoutingTargetResolver
from callrouting.shared.exceptions import (
    AppException,
    BadRequest,
    ConfigurationError,
    LockTimeout,
    NotFound,
    RateLimited,
    StaleRequest,
    Unauthorized,
    Unavailable,
)
from callrouting.shared.logging import call_context, get_logger
from callrouting.webhooks.auth import WebhookAuthenticator, WebhookRequest
from callrouting.webhooks.idempotency import IdempotencyStore, idempotency_key, payload_token
from callrouting.webhooks.rate_limit import RateLimiter, RouteClass

logger = get_logger(__name__)

NOT_FOUND_MESSAGE = "The number you have dialed is not available. Goodbye."
UNAVAILABLE_MESSAGE = "The extension you are trying to reach is unavailable. Goodbye."
BUSY_MESSAGE = "All lines are busy. Please try again later. Goodbye."
ERROR_MESSAGE = "We are unable to connect your call at this time. Goodbye."

_CALL_ID = re.compile(r"^[A-Za-z0-9_-]{1,255}$")

ResolverFactory = Callable[[int], RoutingTargetResolver]


class VoiceRoute(str, Enum):
    ROUTE = "/voice/route"
    IVR = "/voice/ivr"
    RING_GROUP_CALLBACK = "/voice/ring-group-callback"


def _first(fields: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = fields.get(name)
        if value not in (None, ""):
            return value
    return None


class VoiceRequest(BaseModel):
    """Call-control payload, accepting both platform and snake_case naming."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    caller: str = ""
    dialed: str = ""
    direction: str | None = None
    digits: str = ""
    dial_status: str | None = None
    session_data: dict[str, str] = Field(default_factory=dict)

    @field_validator("call_id")
    @classmethod
    def validate_call_id(cls, v: str) -> str:
        if not _CALL_ID.match(v):
            raise ValueError("call id format is invalid")
        return v

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any]) -> "VoiceRequest":
        """Parse a form or JSON payload.

        Raises:
            BadRequest: Required fields missing or malformed.
        """
        session_data = {
            key[len("SessionData.") :]: str(value)
            for key, value in fields.items()
            if isinstance(key, str) and key.startswith("SessionData.")
        }
        nested = fields.get("SessionData")
        if isinstance(nested, Mapping):
            session_data.update({str(k): str(v) for k, v in nested.items()})

        call_id = _first(fields, "call_id", "CallSid", "callSid")
        try:
            return cls(
                call_id=str(call_id or ""),
                caller=normalize_number(str(_first(fields, "from", "From") or "")),
                dialed=normalize_number(str(_first(fields, "to", "To") or "")),
                direction=(str(_first(fields, "direction", "Direction") or "").lower() or None),
                digits=str(_first(fields, "Digits", "digits") or "").strip(),
                dial_status=_first(fields, "DialCallStatus", "dial_status"),
                session_data=session_data,
            )
        except ValidationError as e:
            raise BadRequest("Invalid call-control payload", details={"errors": e.error_count()})

    def auth_fields(self) -> dict[str, str]:
        return {"from": self.caller, "to": self.dialed}


@dataclass(frozen=True)
class VoiceResponse:
    body: str
    media_type: str = MEDIA_TYPE
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)


class VoiceRoutingHandler:
    """Authenticates, deduplicates and routes one call-control delivery."""

    def __init__(
        self,
        authenticator: WebhookAuthenticator,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyStore,
        guard: ConcurrencyGuard,
        builder: ResponseBuilder,
        resolver_factory: ResolverFactory,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize handler.

        Args:
            authenticator: Bearer-token strategy.
            rate_limiter: Per-source and per-tenant limits.
            idempotency: Recorded outcomes for replayed deliveries.
            guard: Per-call lock collapsing concurrent duplicates.
            builder: CXML renderer.
            resolver_factory: Builds a tenant-scoped resolver.
            clock: Routing instant source (UTC).
        """
        self._authenticator = authenticator
        self._rate_limiter = rate_limiter
        self._idempotency = idempotency
        self._guard = guard
        self._builder = builder
        self._resolver_factory = resolver_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle(
        self,
        route: VoiceRoute,
        request: WebhookRequest,
        query: Mapping[str, str] | None = None,
    ) -> VoiceResponse:
        query = query or {}
        try:
            await self._rate_limiter.check_source(request.client_ip, RouteClass.VOICE)
            voice = VoiceRequest.from_fields({**query, **request.fields})

            auth = await self._authenticator.authenticate(
                WebhookRequest.build(
                    path=request.path,
                    client_ip=request.client_ip,
                    headers=request.headers,
                    body=request.body,
                    fields=voice.auth_fields(),
                )
            )
            organization_id = auth.organization_id
            if organization_id is None:
                raise Unauthorized("Tenant not resolved")
            await self._rate_limiter.check_tenant(organization_id, RouteClass.VOICE)
        except (Unauthorized, StaleRequest):
            return self._render(self._builder.unauthorized())
        except RateLimited as e:
            return self._render(self._builder.say_and_hangup(BUSY_MESSAGE), headers=e.headers())
        except BadRequest as e:
            logger.warning(
                "Rejected call-control payload",
                extra={"path": request.path, "client_ip": request.client_ip, "error": e.message},
            )
            return self._render(self._builder.say_and_hangup(ERROR_MESSAGE))

        with call_context(voice.call_id, organization_id):
            return await self._deliver(route, organization_id, voice, request, query)

    async def _deliver(
        self,
        route: VoiceRoute,
        organization_id: int,
        voice: VoiceRequest,
        request: WebhookRequest,
        query: Mapping[str, str],
    ) -> VoiceResponse:
        # Callback state travels in the query string; identical bodies at
        # different ring offsets are different deliveries.
        token = request.header("x-idempotency-key") or payload_token(
            request.body + urlencode(sorted(query.items())).encode("utf-8")
        )
        key = idempotency_key(route.value, organization_id, token)

        replay = await self._replay(key, voice)
        if replay is not None:
            return replay

        try:
            async with self._guard.call(organization_id, voice.call_id):
                replay = await self._replay(key, voice)
                if replay is not None:
                    return replay
                return await self._route_and_record(route, organization_id, voice, query, key)
        except LockTimeout:
            replay = await self._replay(key, voice)
            if replay is not None:
                return replay
            logger.warning(
                "Call lock busy; routing without it",
                extra={"call_id": voice.call_id, "organization_id": organization_id},
            )
            return await self._route_and_record(route, organization_id, voice, query, key)

    async def _replay(self, key: str, voice: VoiceRequest) -> VoiceResponse | None:
        stored = await self._idempotency.lookup(key)
        if stored is None:
            return None
        logger.info("Replaying recorded call-control response", extra={"call_id": voice.call_id})
        if stored.body is None:
            return self._render(self._builder.hangup())
        return VoiceResponse(body=stored.body, media_type=stored.media_type, status_code=stored.status_code)

    async def _route_and_record(
        self,
        route: VoiceRoute,
        organization_id: int,
        voice: VoiceRequest,
        query: Mapping[str, str],
        key: str,
    ) -> VoiceResponse:
        document = await self._route(route, organization_id, voice, query)
        response = self._render(document)
        await self._idempotency.record(key, response.status_code, response.media_type, response.body)
        return response

    async def _route(
        self,
        route: VoiceRoute,
        organization_id: int,
        voice: VoiceRequest,
        query: Mapping[str, str],
    ) -> CxmlDocument:
        resolver = self._resolver_factory(organization_id)
        try:
            decision = await self._decide(route, resolver, organization_id, voice, query)
        except AppException as e:
            return self._failure(e, organization_id, voice)

        logger.info(
            "Call routed",
            extra={
                "call_id": voice.call_id,
                "organization_id": organization_id,
                "route": route.value,
                "decision": type(decision).__name__,
            },
        )
        return self._builder.build(decision)

    async def _decide(
        self,
        route: VoiceRoute,
        resolver: RoutingTargetResolver,
        organization_id: int,
        voice: VoiceRequest,
        query: Mapping[str, str],
    ) -> RoutingDecision:
        direction = await self._direction(resolver, voice)
        ctx = CallContext(
            organization_id=organization_id,
            call_id=voice.call_id,
            caller=voice.caller,
            dialed=voice.dialed,
            direction=direction,
            instant=self._clock(),
        )

        match route:
            case VoiceRoute.ROUTE:
                return await resolver.resolve(ctx)
            case VoiceRoute.IVR:
                menu_id = _int_param(query, "menu_id")
                return await resolver.resolve_menu_input(ctx, menu_id, voice.digits)
            case VoiceRoute.RING_GROUP_CALLBACK:
                ring_group_id = _int_param(query, "ring_group_id")
                offset = _int_param(query, "offset", default=0)
                order = [item for item in str(query.get("order") or "").split(",") if item]
                return await resolver.continue_ring_group(
                    ctx, ring_group_id, order, offset, voice.dial_status
                )
        raise BadRequest(f"Unsupported voice route: {route}")

    @staticmethod
    async def _direction(resolver: RoutingTargetResolver, voice: VoiceRequest) -> CallDirection:
        match voice.direction:
            case "inbound":
                return CallDirection.INBOUND
            case "internal":
                return CallDirection.INTERNAL
        return await resolver.classify(voice.caller, voice.dialed)

    def _failure(self, error: AppException, organization_id: int, voice: VoiceRequest) -> CxmlDocument:
        logger.warning(
            "Call routing failed",
            extra={
                "call_id": voice.call_id,
                "organization_id": organization_id,
                "failure": error.code,
                "error": error.message,
            },
        )
        match error:
            case NotFound():
                return self._builder.say_and_hangup(NOT_FOUND_MESSAGE)
            case Unavailable():
                return self._builder.say_and_hangup(UNAVAILABLE_MESSAGE)
            case LockTimeout() | RateLimited():
                return self._builder.say_and_hangup(BUSY_MESSAGE)
            case ConfigurationError():
                return self._builder.say_and_hangup(ERROR_MESSAGE)
        return self._builder.say_and_hangup(ERROR_MESSAGE)

    @staticmethod
    def _render(document: CxmlDocument, headers: dict[str, str] | None = None) -> VoiceResponse:
        return VoiceResponse(body=document.render(), headers=headers or {})


def _int_param(query: Mapping[str, str], name: str, default: int | None = None) -> int:
    raw = query.get(name)
    if raw in (None, ""):
        if default is not None:
            return default
        raise BadRequest(f"Missing parameter: {name}")
    try:
        return int(str(raw))
    except ValueError:
        raise BadRequest(f"Invalid parameter: {name}")


__all__ = ["VoiceRequest", "VoiceResponse", "VoiceRoute", "VoiceRoutingHandler"]
