"""
FastAPI dependency providers for the webhook routers.

Every collaborator is resolved through ``Depends`` so tests can swap them via
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from callrouting.config import Settings, get_settings
from callrouting.cxml.builder import ResponseBuilder
from callrouting.routing.config import RoutingConfig, get_routing_config
from callrouting.routing.engine import build_resolver
from callrouting.routing.locks import ConcurrencyGuard
from callrouting.routing.repository import TenantDirectory
from callrouting.shared.cache import StateStore, get_state_store
from callrouting.shared.database import get_db_session
from callrouting.shared.exceptions import BadRequest
from callrouting.webhooks.auth import BearerTokenAuthenticator, SignatureAuthenticator, WebhookRequest
from callrouting.webhooks.config import WebhookConfig, get_webhook_config
from callrouting.webhooks.idempotency import IdempotencyStore
from callrouting.webhooks.rate_limit import RateLimiter
from callrouting.webhooks.voice import VoiceRoutingHandler


def get_store() -> StateStore:
    return get_state_store()


def get_tenant_directory(session: AsyncSession = Depends(get_db_session)) -> TenantDirectory:
    return TenantDirectory(session)


def get_rate_limiter(
    store: StateStore = Depends(get_store),
    config: WebhookConfig = Depends(get_webhook_config),
) -> RateLimiter:
    return RateLimiter(store, config)


def get_idempotency_store(
    store: StateStore = Depends(get_store),
    config: WebhookConfig = Depends(get_webhook_config),
) -> IdempotencyStore:
    return IdempotencyStore(store, config)


def get_signature_authenticator(
    config: WebhookConfig = Depends(get_webhook_config),
    directory: TenantDirectory = Depends(get_tenant_directory),
) -> SignatureAuthenticator:
    return SignatureAuthenticator(config, directory)


def get_cdr_authenticator(
    config: WebhookConfig = Depends(get_webhook_config),
    directory: TenantDirectory = Depends(get_tenant_directory),
) -> SignatureAuthenticator:
    return SignatureAuthenticator(config, directory, allow_domain_uuid=True)


def get_voice_handler(
    session: AsyncSession = Depends(get_db_session),
    store: StateStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    routing_config: RoutingConfig = Depends(get_routing_config),
    directory: TenantDirectory = Depends(get_tenant_directory),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
) -> VoiceRoutingHandler:
    return VoiceRoutingHandler(
        authenticator=BearerTokenAuthenticator(directory),
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        guard=ConcurrencyGuard(store, routing_config),
        builder=ResponseBuilder(routing_config),
        resolver_factory=lambda organization_id: build_resolver(
            session,
            organization_id,
            store,
            routing_config,
            settings.public_base_url,
        ),
    )


async def read_payload(request: Request) -> tuple[bytes, dict[str, Any]]:
    """Raw body plus parsed fields from a form or JSON delivery."""
    body = await request.body()
    content_type = request.headers.get("content-type", "").lower()

    if "application/json" in content_type:
        if not body.strip():
            return body, {}
        try:
            parsed = await request.json()
        except ValueError:
            raise BadRequest("Malformed JSON payload")
        if not isinstance(parsed, dict):
            raise BadRequest("JSON payload must be an object")
        return body, parsed

    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return body, {key: value for key, value in form.items() if isinstance(value, str)}

    return body, {}


def webhook_request(request: Request, body: bytes, fields: dict[str, Any]) -> WebhookRequest:
    return WebhookRequest.build(
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
        headers=request.headers,
        body=body,
        fields=fields,
    )


__all__ = [
    "get_cdr_authenticator",
    "get_idempotency_store",
    "get_rate_limiter",
    "get_signature_authenticator",
    "get_store",
    "get_tenant_directory",
    "get_voice_handler",
    "read_payload",
    "webhook_request",
]
