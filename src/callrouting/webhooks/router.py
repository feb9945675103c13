"""
FastAPI routers for Cloudonix webhooks.

- /voice/*: real-time call control (bearer token, CXML responses, always 200)
- /webhooks/cloudonix/*: asynchronous events (signature, JSON responses)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from callrouting.shared.database import get_db_session
from callrouting.shared.exceptions import BadRequest, NotFound
from callrouting.shared.logging import get_logger
from callrouting.webhooks.auth import SignatureAuthenticator
from callrouting.webhooks.dependencies import (
    get_cdr_authenticator,
    get_idempotency_store,
    get_rate_limiter,
    get_signature_authenticator,
    get_voice_handler,
    read_payload,
    webhook_request,
)
from callrouting.webhooks.events import CallEvent, CallEventHandler, CallEventType
from callrouting.webhooks.idempotency import (
    ALREADY_PROCESSED,
    IdempotencyStore,
    idempotency_key,
    payload_token,
)
from callrouting.webhooks.rate_limit import RateLimiter, RouteClass
from callrouting.webhooks.voice import VoiceRoute, VoiceRoutingHandler

logger = get_logger(__name__)

voice_router = APIRouter(prefix="/voice", tags=["voice"])
events_router = APIRouter(prefix="/webhooks/cloudonix", tags=["webhooks"])


# ----------------------------
# Call control
# ----------------------------


async def _voice(route: VoiceRoute, request: Request, handler: VoiceRoutingHandler) -> Response:
    try:
        body, fields = await read_payload(request)
    except BadRequest:
        body, fields = await request.body(), {}

    result = await handler.handle(
        route,
        webhook_request(request, body, fields),
        query=dict(request.query_params),
    )
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.media_type,
        headers=result.headers,
    )


@voice_router.post("/route")
async def route_call(
    request: Request,
    handler: VoiceRoutingHandler = Depends(get_voice_handler),
) -> Response:
    """Initial routing decision for a new call."""
    return await _voice(VoiceRoute.ROUTE, request, handler)


@voice_router.post("/ivr")
async def ivr_input(
    request: Request,
    handler: VoiceRoutingHandler = Depends(get_voice_handler),
) -> Response:
    """Digits collected by an IVR menu (menu_id in the query string)."""
    return await _voice(VoiceRoute.IVR, request, handler)


@voice_router.post("/ring-group-callback")
async def ring_group_callback(
    request: Request,
    handler: VoiceRoutingHandler = Depends(get_voice_handler),
) -> Response:
    """Outcome of one sequential / round-robin attempt."""
    return await _voice(VoiceRoute.RING_GROUP_CALLBACK, request, handler)


@voice_router.get("/health")
async def voice_health() -> dict[str, str]:
    return {
        "status": "healthy",
        "service": "voice-routing",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ----------------------------
# Asynchronous events
# ----------------------------


def _event_token(request: Request, body: bytes, fields: dict[str, Any]) -> str:
    header = request.headers.get("x-idempotency-key")
    if header:
        return header
    call_id = fields.get("call_id") or fields.get("CallSid")
    status = fields.get("CallStatus") or fields.get("status")
    if call_id and status:
        return f"{call_id}:{status}"
    return payload_token(body)


async def _event(
    event_type: CallEventType,
    request: Request,
    session: AsyncSession,
    authenticator: SignatureAuthenticator,
    rate_limiter: RateLimiter,
    idempotency: IdempotencyStore,
) -> JSONResponse:
    client_ip = request.client.host if request.client else None
    await rate_limiter.check_source(client_ip, RouteClass.WEBHOOKS)

    body, fields = await read_payload(request)
    auth = await authenticator.authenticate(webhook_request(request, body, fields))
    organization_id = auth.organization_id
    if organization_id is not None:
        await rate_limiter.check_tenant(organization_id, RouteClass.WEBHOOKS)

    key = idempotency_key(request.url.path, organization_id, _event_token(request, body, fields))
    stored = await idempotency.lookup(key)
    if stored is not None:
        logger.info(
            "Duplicate webhook delivery",
            extra={"path": request.url.path, "organization_id": organization_id},
        )
        content = ALREADY_PROCESSED if stored.body is None else json.loads(stored.body)
        return JSONResponse(status_code=stored.status_code, content=content)

    event = CallEvent.parse(event_type, fields)
    if organization_id is None:
        raise NotFound("Organization not resolved for event", details={"call_id": event.call_id})

    await CallEventHandler(session).handle(organization_id, event)
    await session.commit()

    content = {"status": "success", "message": f"{event_type.value} processed"}
    await idempotency.record(key, 200, "application/json", json.dumps(content))
    return JSONResponse(status_code=200, content=content)


@events_router.post("/call-status")
async def call_status(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    authenticator: SignatureAuthenticator = Depends(get_signature_authenticator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
) -> JSONResponse:
    return await _event(CallEventType.CALL_STATUS, request, session, authenticator, rate_limiter, idempotency)


@events_router.post("/session-update")
async def session_update(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    authenticator: SignatureAuthenticator = Depends(get_signature_authenticator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
) -> JSONResponse:
    return await _event(CallEventType.SESSION_UPDATE, request, session, authenticator, rate_limiter, idempotency)


@events_router.post("/cdr")
async def cdr(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    authenticator: SignatureAuthenticator = Depends(get_cdr_authenticator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
) -> JSONResponse:
    return await _event(CallEventType.CDR, request, session, authenticator, rate_limiter, idempotency)


__all__ = ["events_router", "voice_router"]
