"""
Ring-group distribution.

The distributor is stateless per call: it turns a member snapshot into a dial
plan. Sequential progress (which member to ring next) travels in the callback
URL; only a round-robin turn counter is persisted, per ring group.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from callrouting.routing.decisions import DialEndpoint
from callrouting.routing.models import RingGroupStrategy
from callrouting.routing.schemas import MemberSnapshot, RingGroupSnapshot
from callrouting.routing.targets import RoutingTarget
from callrouting.shared.cache import STORE_ERRORS, StateStore
from callrouting.shared.exceptions import ConfigurationError
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)


def member_endpoint(member: MemberSnapshot) -> DialEndpoint:
    if member.sip_uri and member.sip_uri.strip():
        return DialEndpoint.sip(member.sip_uri)
    return DialEndpoint.extension(member.extension_number)


@dataclass(frozen=True)
class DistributionPlan:
    """Ordered members to ring and how to ring them."""

    ring_group_id: int
    strategy: RingGroupStrategy
    members: tuple[MemberSnapshot, ...]
    timeout: int
    ring_turns: int = 1
    fallback: RoutingTarget | None = None

    @property
    def parallel(self) -> bool:
        return self.strategy is RingGroupStrategy.SIMULTANEOUS

    @property
    def is_empty(self) -> bool:
        return not self.members

    @property
    def max_attempts(self) -> int:
        return len(self.members) * max(self.ring_turns, 1)

    @property
    def order(self) -> tuple[str, ...]:
        return tuple(m.extension_number for m in self.members)

    def endpoints(self) -> tuple[DialEndpoint, ...]:
        return tuple(member_endpoint(m) for m in self.members)


class RoundRobinCursor(Protocol):
    """Per-ring-group turn counter for round-robin starts."""

    async def next_turn(self, organization_id: int, ring_group_id: int) -> int | None: ...


class StoreRoundRobinCursor:
    """RoundRobinCursor on the shared state store.

    Each call takes a turn with one atomic increment, so concurrent calls to
    the same group get distinct turns without holding the ring-group lock.
    """

    def __init__(self, store: StateStore, ttl_seconds: int) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def _key(organization_id: int, ring_group_id: int) -> str:
        return f"ring_group:rr:{organization_id}:{ring_group_id}"

    async def next_turn(self, organization_id: int, ring_group_id: int) -> int | None:
        try:
            return await self._store.incr(
                self._key(organization_id, ring_group_id),
                ttl_seconds=self._ttl_seconds,
            )
        except STORE_ERRORS as e:
            logger.warning(
                "Round-robin cursor unavailable",
                extra={"ring_group_id": ring_group_id, "error": str(e)},
            )
            return None


class RingGroupDistributor:
    """Computes dial plans for ring groups."""

    def __init__(self, cursor: RoundRobinCursor | None = None) -> None:
        self._cursor = cursor

    @staticmethod
    def active_members(group: RingGroupSnapshot) -> list[MemberSnapshot]:
        """Active members in priority order; foreign-tenant members are a configuration error."""
        members: list[MemberSnapshot] = []
        for member in sorted(group.members, key=lambda m: (m.priority, m.extension_id)):
            if member.organization_id != group.organization_id:
                raise ConfigurationError(
                    "Ring group member belongs to another organization",
                    details={"ring_group_id": group.id, "extension_id": member.extension_id},
                )
            if member.is_active:
                members.append(member)
        return members

    async def distribute(self, group: RingGroupSnapshot, call_id: str | None = None) -> DistributionPlan:
        """Build the dial plan for ``group``.

        Args:
            group: Ring group with its current member snapshot.
            call_id: Call being distributed, for logging.

        Returns:
            Plan with members in the order they should ring. Empty when no
            member is active; the caller applies the fallback.
        """
        members = self.active_members(group)

        if group.strategy is RingGroupStrategy.ROUND_ROBIN and len(members) > 1:
            members = await self._rotate(group, members)

        plan = DistributionPlan(
            ring_group_id=group.id,
            strategy=group.strategy,
            members=tuple(members),
            timeout=group.timeout,
            ring_turns=group.ring_turns,
            fallback=group.fallback,
        )

        logger.info(
            "Ring group distributed",
            extra={
                "call_id": call_id,
                "ring_group_id": group.id,
                "strategy": group.strategy.value,
                "member_count": len(members),
                "order": list(plan.order),
            },
        )
        return plan

    async def _rotate(self, group: RingGroupSnapshot, members: list[MemberSnapshot]) -> list[MemberSnapshot]:
        if self._cursor is None:
            return members

        turn = await self._cursor.next_turn(group.organization_id, group.id)
        if turn is None:
            return members
        start = (turn - 1) % len(members)
        return members[start:] + members[:start]


__all__ = [
    "DistributionPlan",
    "RingGroupDistributor",
    "RoundRobinCursor",
    "StoreRoundRobinCursor",
    "member_endpoint",
]
