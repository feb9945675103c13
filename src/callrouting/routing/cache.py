"""
Read-through configuration cache.

Keys are namespaced per tenant (``routing:{org}:{kind}:{key}``) so one
tenant's entries can never answer another tenant's lookup, and a whole tenant
can be dropped with one prefix delete. The cache is an optimization only: any
store failure degrades to a direct repository read.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from callrouting.routing.config import RoutingConfig
from callrouting.routing.repository import RoutingRepositoryProtocol
from callrouting.routing.schemas import (
    ConferenceRoomSnapshot,
    DidSnapshot,
    ExtensionSnapshot,
    IvrMenuSnapshot,
    RingGroupSnapshot,
    ScheduleSnapshot,
)
from callrouting.shared.cache import CacheClient
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)

SnapshotT = TypeVar("SnapshotT", bound=BaseModel)

_KEY_ROOT = "routing"


def tenant_prefix(organization_id: int) -> str:
    return f"{_KEY_ROOT}:{organization_id}:"


def extension_key(organization_id: int, extension_number: str) -> str:
    return f"{tenant_prefix(organization_id)}extension:{extension_number}"


def schedule_key(organization_id: int, schedule_id: int) -> str:
    return f"{tenant_prefix(organization_id)}schedule:{schedule_id}"


def did_key(organization_id: int, phone_number: str) -> str:
    return f"{tenant_prefix(organization_id)}did:{phone_number}"


class ConfigCache:
    """Tenant-namespaced, TTL-bounded cache of configuration snapshots."""

    def __init__(self, cache: CacheClient, config: RoutingConfig) -> None:
        self._cache = cache
        self._config = config

    async def _read_through(
        self,
        key: str,
        model: type[SnapshotT],
        ttl_seconds: int,
        loader: Callable[[], Awaitable[SnapshotT | None]],
    ) -> SnapshotT | None:
        if not self._config.cache_enabled:
            return await loader()

        cached = await self._cache.get(key)
        if cached is not None:
            try:
                return model.model_validate(cached)
            except ValidationError:
                logger.warning("Dropping stale cache entry", extra={"key": key})
                await self._cache.delete(key)

        snapshot = await loader()
        if snapshot is not None:
            await self._cache.set(key, snapshot.model_dump(mode="json"), ttl_seconds)
        return snapshot

    async def get_extension(
        self,
        organization_id: int | None,
        extension_number: str,
        loader: Callable[[], Awaitable[ExtensionSnapshot | None]],
    ) -> ExtensionSnapshot | None:
        if organization_id is None:
            return None
        return await self._read_through(
            extension_key(organization_id, extension_number),
            ExtensionSnapshot,
            self._config.extension_cache_ttl_seconds,
            loader,
        )

    async def get_schedule(
        self,
        organization_id: int | None,
        schedule_id: int,
        loader: Callable[[], Awaitable[ScheduleSnapshot | None]],
    ) -> ScheduleSnapshot | None:
        if organization_id is None:
            return None
        return await self._read_through(
            schedule_key(organization_id, schedule_id),
            ScheduleSnapshot,
            self._config.schedule_cache_ttl_seconds,
            loader,
        )

    async def get_did(
        self,
        organization_id: int | None,
        phone_number: str,
        loader: Callable[[], Awaitable[DidSnapshot | None]],
    ) -> DidSnapshot | None:
        if organization_id is None:
            return None
        return await self._read_through(
            did_key(organization_id, phone_number),
            DidSnapshot,
            self._config.did_cache_ttl_seconds,
            loader,
        )

    # Invalidation hooks for the administrative layer.

    async def invalidate_extension(self, organization_id: int, extension_number: str) -> None:
        await self._cache.delete(extension_key(organization_id, extension_number))
        logger.info(
            "Extension cache invalidated",
            extra={"organization_id": organization_id, "extension_number": extension_number},
        )

    async def invalidate_schedule(self, organization_id: int, schedule_id: int) -> None:
        await self._cache.delete(schedule_key(organization_id, schedule_id))
        logger.info(
            "Schedule cache invalidated",
            extra={"organization_id": organization_id, "schedule_id": schedule_id},
        )

    async def invalidate_did(self, organization_id: int, phone_number: str) -> None:
        await self._cache.delete(did_key(organization_id, phone_number))
        logger.info(
            "DID cache invalidated",
            extra={"organization_id": organization_id, "phone_number": phone_number},
        )

    async def invalidate_tenant(self, organization_id: int) -> None:
        await self._cache.delete_prefix(tenant_prefix(organization_id))
        logger.info("Tenant routing cache invalidated", extra={"organization_id": organization_id})


class CachedRoutingRepository:
    """RoutingRepository facade that serves DID, extension and schedule reads through ConfigCache."""

    def __init__(self, repository: RoutingRepositoryProtocol, cache: ConfigCache) -> None:
        self._repository = repository
        self._cache = cache

    @property
    def organization_id(self) -> int | None:
        return self._repository.organization_id

    async def get_did(self, phone_number: str) -> DidSnapshot | None:
        return await self._cache.get_did(
            self.organization_id,
            phone_number,
            lambda: self._repository.get_did(phone_number),
        )

    async def get_extension(self, extension_number: str) -> ExtensionSnapshot | None:
        return await self._cache.get_extension(
            self.organization_id,
            extension_number,
            lambda: self._repository.get_extension(extension_number),
        )

    async def get_extension_by_id(self, extension_id: int) -> ExtensionSnapshot | None:
        return await self._repository.get_extension_by_id(extension_id)

    async def get_ring_group(self, ring_group_id: int) -> RingGroupSnapshot | None:
        return await self._repository.get_ring_group(ring_group_id)

    async def get_schedule(self, schedule_id: int) -> ScheduleSnapshot | None:
        return await self._cache.get_schedule(
            self.organization_id,
            schedule_id,
            lambda: self._repository.get_schedule(schedule_id),
        )

    async def get_conference_room(self, room_id: int) -> ConferenceRoomSnapshot | None:
        return await self._repository.get_conference_room(room_id)

    async def get_ivr_menu(self, menu_id: int) -> IvrMenuSnapshot | None:
        return await self._repository.get_ivr_menu(menu_id)

    async def reference_owner(self, kind: str, entity_id: int) -> int | None:
        return await self._repository.reference_owner(kind, entity_id)


__all__ = [
    "CachedRoutingRepository",
    "ConfigCache",
    "did_key",
    "extension_key",
    "schedule_key",
    "tenant_prefix",
]
