"""
Distributed mutual exclusion on the shared state store.

Two lock families:
- ``lock:ring_group:{org}:{id}`` serializes member replacement against
  routing reads of the same ring group.
- ``lock:call:{org}:{call_id}`` collapses near-simultaneous duplicate
  deliveries for one call into a single routing computation.

Acquisition is SET-if-absent with an owner token and a TTL; waiting is bounded
and polls at ``lock_retry_interval_seconds``. Release is compare-and-delete so
an expired holder can never free a lock someone else now owns.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from callrouting.routing.config import RoutingConfig
from callrouting.shared.cache import STORE_ERRORS, StateStore
from callrouting.shared.exceptions import LockTimeout
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)


def ring_group_lock_key(organization_id: int, ring_group_id: int) -> str:
    return f"lock:ring_group:{organization_id}:{ring_group_id}"


def call_lock_key(organization_id: int | None, call_id: str) -> str:
    return f"lock:call:{organization_id if organization_id is not None else '-'}:{call_id}"


@dataclass(frozen=True)
class LockHandle:
    key: str
    token: str
    acquired_at: float


class ConcurrencyGuard:
    """Bounded-wait locks keyed per ring group and per call id."""

    def __init__(self, store: StateStore, config: RoutingConfig) -> None:
        self._store = store
        self._config = config

    async def acquire(self, key: str, ttl_seconds: float, wait_seconds: float) -> LockHandle:
        """Acquire ``key`` or raise LockTimeout once ``wait_seconds`` elapses.

        Store failures are reported as LockTimeout: without the store there is
        no way to prove exclusivity.
        """
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait_seconds
        attempts = 0

        while True:
            attempts += 1
            try:
                acquired = await self._store.set(key, token, ttl_seconds=ttl_seconds, only_if_absent=True)
            except STORE_ERRORS as e:
                logger.warning(
                    "Lock store unavailable",
                    extra={"lock_key": key, "error": str(e)},
                )
                raise LockTimeout(
                    "Lock store unavailable",
                    details={"key": key, "reason": "store_unavailable"},
                ) from e

            if acquired:
                return LockHandle(key=key, token=token, acquired_at=time.monotonic())

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Lock wait timed out",
                    extra={"lock_key": key, "attempts": attempts, "wait_seconds": wait_seconds},
                )
                raise LockTimeout(
                    "Timed out waiting for lock",
                    details={"key": key, "wait_seconds": wait_seconds},
                )
            await asyncio.sleep(min(self._config.lock_retry_interval_seconds, remaining))

    async def release(self, handle: LockHandle) -> bool:
        try:
            released = await self._store.delete_if_equals(handle.key, handle.token)
        except STORE_ERRORS as e:
            # The TTL reclaims the lock.
            logger.warning("Lock release failed", extra={"lock_key": handle.key, "error": str(e)})
            return False
        if not released:
            logger.warning(
                "Lock expired before release",
                extra={"lock_key": handle.key, "held_seconds": time.monotonic() - handle.acquired_at},
            )
        return released

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: float, wait_seconds: float) -> AsyncIterator[LockHandle]:
        handle = await self.acquire(key, ttl_seconds, wait_seconds)
        try:
            yield handle
        finally:
            await self.release(handle)

    def ring_group(self, organization_id: int, ring_group_id: int):
        """Exclusive section over one ring group's membership."""
        return self.hold(
            ring_group_lock_key(organization_id, ring_group_id),
            self._config.ring_group_lock_ttl_seconds,
            self._config.ring_group_lock_wait_seconds,
        )

    def call(self, organization_id: int | None, call_id: str):
        """Short exclusive section for one call id."""
        return self.hold(
            call_lock_key(organization_id, call_id),
            self._config.call_lock_ttl_seconds,
            self._config.call_lock_wait_seconds,
        )


__all__ = [
    "ConcurrencyGuard",
    "LockHandle",
    "call_lock_key",
    "ring_group_lock_key",
]
