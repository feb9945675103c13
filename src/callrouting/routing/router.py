"""
Internal hooks for the administrative layer.
"""

from __future__ import annotations

import hmac
from enum import Enum

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field, model_validator

from callrouting.config import Settings, get_settings
from callrouting.routing.cache import ConfigCache
from callrouting.routing.config import RoutingConfig, get_routing_config
from callrouting.shared.cache import CacheClient, StateStore
from callrouting.shared.exceptions import NotFound, Unauthorized
from callrouting.shared.logging import get_logger
from callrouting.webhooks.dependencies import get_store

logger = get_logger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"])


class CacheEntity(str, Enum):
    DID = "did"
    EXTENSION = "extension"
    SCHEDULE = "schedule"
    TENANT = "tenant"


class InvalidationRequest(BaseModel):
    organization_id: int = Field(..., ge=1)
    entity: CacheEntity
    key: str | None = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def require_key(self) -> "InvalidationRequest":
        if self.entity is not CacheEntity.TENANT and not self.key:
            raise ValueError(f"key is required for entity '{self.entity.value}'")
        if self.entity is CacheEntity.SCHEDULE and self.key is not None and not self.key.isdigit():
            raise ValueError("schedule key must be a numeric id")
        return self


def require_internal_token(
    x_internal_token: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.internal_api_token:
        raise NotFound("Not found")
    if not x_internal_token or not hmac.compare_digest(
        x_internal_token.encode("utf-8"),
        settings.internal_api_token.encode("utf-8"),
    ):
        logger.warning("Internal token rejected", extra={"endpoint": "routing-cache/invalidate"})
        raise Unauthorized("Invalid internal token")


@router.post("/routing-cache/invalidate", dependencies=[Depends(require_internal_token)])
async def invalidate_routing_cache(
    payload: InvalidationRequest,
    store: StateStore = Depends(get_store),
    config: RoutingConfig = Depends(get_routing_config),
) -> dict[str, str]:
    cache = ConfigCache(CacheClient(store), config)

    match payload.entity:
        case CacheEntity.DID:
            await cache.invalidate_did(payload.organization_id, payload.key or "")
        case CacheEntity.EXTENSION:
            await cache.invalidate_extension(payload.organization_id, payload.key or "")
        case CacheEntity.SCHEDULE:
            await cache.invalidate_schedule(payload.organization_id, int(payload.key or 0))
        case CacheEntity.TENANT:
            await cache.invalidate_tenant(payload.organization_id)

    return {"status": "success", "message": f"{payload.entity.value} cache invalidated"}


__all__ = ["router"]
