"""
Per-request assembly of the routing engine for one tenant.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from callrouting.routing.cache import CachedRoutingRepository, ConfigCache
from callrouting.routing.config import RoutingConfig
from callrouting.routing.distributor import RingGroupDistributor, StoreRoundRobinCursor
from callrouting.routing.ivr import IvrTurnCounter
from callrouting.routing.locks import ConcurrencyGuard
from callrouting.routing.repository import RoutingRepository
from callrouting.routing.resolver import RoutingTargetResolver
from callrouting.routing.ring_groups import RingGroupMembershipService
from callrouting.routing.schedule import ScheduleEvaluator
from callrouting.shared.cache import CacheClient, StateStore


def build_membership_service(
    session: AsyncSession,
    organization_id: int | None,
    store: StateStore,
    config: RoutingConfig,
) -> RingGroupMembershipService:
    """Lock-guarded ring-group access; commits on ``session``."""
    return RingGroupMembershipService(
        RoutingRepository(session, organization_id),
        ConcurrencyGuard(store, config),
        transaction=session,
    )


def build_resolver(
    session: AsyncSession,
    organization_id: int | None,
    store: StateStore,
    config: RoutingConfig,
    callback_base_url: str,
) -> RoutingTargetResolver:
    repository = RoutingRepository(session, organization_id)
    cached = CachedRoutingRepository(repository, ConfigCache(CacheClient(store), config))
    return RoutingTargetResolver(
        repository=cached,
        ring_groups=build_membership_service(session, organization_id, store, config),
        distributor=RingGroupDistributor(
            StoreRoundRobinCursor(store, config.round_robin_cursor_ttl_seconds)
        ),
        evaluator=ScheduleEvaluator(),
        config=config,
        callback_base_url=callback_base_url,
        ivr_turns=IvrTurnCounter(store, config.ivr_turn_ttl_seconds),
    )


__all__ = ["build_membership_service", "build_resolver"]
