"""
Idempotent webhook delivery.

The key is a stable hash of (route, tenant, delivery token). A hit replays the
recorded status and body; oversized bodies are recorded as metadata only and
replayed as a generic acknowledgment. Store failures degrade to processing
the delivery again.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass

import anyio

from callrouting.shared.cache import STORE_ERRORS, StateStore
from callrouting.shared.logging import get_logger
from callrouting.webhooks.config import WebhookConfig

logger = get_logger(__name__)

ALREADY_PROCESSED = {"status": "success", "message": "Webhook already processed"}


@dataclass(frozen=True)
class StoredResponse:
    status_code: int
    media_type: str
    body: str | None
    truncated: bool = False


def payload_token(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def idempotency_key(route: str, organization_id: int | None, token: str) -> str:
    material = f"{route}|{organization_id if organization_id is not None else '-'}|{token}"
    return "idempotency:" + hashlib.sha256(material.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Recorded webhook outcomes on the shared state store."""

    def __init__(
        self,
        store: StateStore,
        config: WebhookConfig,
        write_timeout_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._config = config
        self._write_timeout_seconds = write_timeout_seconds

    async def lookup(self, key: str) -> StoredResponse | None:
        try:
            raw = await self._store.get(key)
        except STORE_ERRORS as e:
            logger.warning("Idempotency lookup failed", extra={"error": str(e)})
            return None
        if raw is None:
            return None
        try:
            return StoredResponse(**json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.warning("Discarding unreadable idempotency record", extra={"error": str(e)})
            return None

    async def record(self, key: str, status_code: int, media_type: str, body: str) -> bool:
        """Record an outcome; returns False when nothing was stored."""
        truncated = len(body.encode("utf-8")) > self._config.idempotency_max_response_bytes
        entry = StoredResponse(
            status_code=status_code,
            media_type=media_type,
            body=None if truncated else body,
            truncated=truncated,
        )
        if truncated:
            logger.info(
                "Response too large to replay; recording metadata only",
                extra={"status_code": status_code, "size_bytes": len(body)},
            )

        stored = False
        with anyio.move_on_after(self._write_timeout_seconds) as scope:
            try:
                await self._store.set(
                    key,
                    json.dumps(asdict(entry)),
                    ttl_seconds=self._config.idempotency_ttl_seconds,
                )
                stored = True
            except STORE_ERRORS as e:
                logger.warning("Idempotency record not stored", extra={"error": str(e)})
        if scope.cancelled_caught:
            logger.warning(
                "Idempotency write timed out",
                extra={"timeout_seconds": self._write_timeout_seconds},
            )
        return stored


__all__ = [
    "ALREADY_PROCESSED",
    "IdempotencyStore",
    "StoredResponse",
    "idempotency_key",
    "payload_token",
]
