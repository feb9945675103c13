"""
Fixed-window rate limiting per tenant and per source address.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from callrouting.shared.cache import STORE_ERRORS, StateStore
from callrouting.shared.exceptions import RateLimited
from callrouting.shared.logging import get_logger
from callrouting.webhooks.config import WebhookConfig

logger = get_logger(__name__)

WINDOW_SECONDS = 60


class RouteClass(str, Enum):
    VOICE = "voice"
    WEBHOOKS = "webhooks"


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


class RateLimiter:
    """Per-minute counters; store outages let requests through."""

    def __init__(
        self,
        store: StateStore,
        config: WebhookConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock

    def limit_for(self, route_class: RouteClass) -> int:
        match route_class:
            case RouteClass.VOICE:
                return self._config.rate_limit_voice_per_minute
            case RouteClass.WEBHOOKS:
                return self._config.rate_limit_webhooks_per_minute
        raise ValueError(f"Unknown route class: {route_class}")

    async def check_source(self, client_ip: str | None, route_class: RouteClass) -> RateLimitStatus:
        """Per-address limit, applied before authentication."""
        return await self._hit("ip", client_ip or "unknown", route_class, self._config.rate_limit_ip_per_minute)

    async def check_tenant(self, organization_id: int, route_class: RouteClass) -> RateLimitStatus:
        return await self._hit("org", str(organization_id), route_class, self.limit_for(route_class))

    async def _hit(self, scope: str, identifier: str, route_class: RouteClass, limit: int) -> RateLimitStatus:
        now = self._clock()
        window = int(now // WINDOW_SECONDS)
        reset_at = (window + 1) * WINDOW_SECONDS
        key = f"rate_limit:{scope}:{identifier}:{route_class.value}:{window}"

        try:
            count = await self._store.incr(key, ttl_seconds=WINDOW_SECONDS)
        except STORE_ERRORS as e:
            logger.warning(
                "Rate limiter unavailable; allowing request",
                extra={"scope": scope, "route_class": route_class.value, "error": str(e)},
            )
            return RateLimitStatus(limit=limit, remaining=limit, reset_at=reset_at)

        warning_at = math.ceil(limit * self._config.rate_limit_warning_ratio)
        if count == warning_at and count <= limit:
            logger.warning(
                "Rate limit nearly reached",
                extra={
                    "scope": scope,
                    "identifier": identifier,
                    "route_class": route_class.value,
                    "count": count,
                    "limit": limit,
                },
            )

        if count > limit:
            retry_after = max(1, math.ceil(reset_at - now))
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "scope": scope,
                    "identifier": identifier,
                    "route_class": route_class.value,
                    "limit": limit,
                    "retry_after": retry_after,
                },
            )
            raise RateLimited(
                "Too many requests",
                limit=limit,
                retry_after=retry_after,
                reset_at=reset_at,
                details={"scope": scope},
            )

        return RateLimitStatus(limit=limit, remaining=limit - count, reset_at=reset_at)


__all__ = ["RateLimitStatus", "RateLimiter", "RouteClass"]
