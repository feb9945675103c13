"""
Ring-group membership access under the per-group lock.

Member replacement is delete-then-recreate. Holding the ring-group lock for
the whole replace (and for every routing read of the same group) means a
reader sees either the complete old set or the complete new set, never the
empty intermediate state.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from callrouting.routing.locks import ConcurrencyGuard
from callrouting.routing.schemas import RingGroupSnapshot
from callrouting.shared.exceptions import LockTimeout, NotFound
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)


class MembershipStore(Protocol):
    """Persistence operations the membership service needs."""

    organization_id: int | None

    async def get_ring_group(self, ring_group_id: int) -> RingGroupSnapshot | None: ...

    async def ring_group_exists(self, ring_group_id: int) -> bool: ...

    async def replace_ring_group_members(
        self,
        ring_group_id: int,
        members: Sequence[tuple[int, int]],
    ) -> None: ...


class Committer(Protocol):
    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class RingGroupMembershipService:
    """Lock-guarded reads and replacement of ring-group members."""

    def __init__(
        self,
        store: MembershipStore,
        guard: ConcurrencyGuard,
        transaction: Committer | None = None,
    ) -> None:
        """Initialize service.

        Args:
            store: Tenant-scoped repository.
            guard: Lock provider.
            transaction: Session committed before the lock is released; the
                new member set must be durable before readers are let in.
        """
        self._store = store
        self._guard = guard
        self._transaction = transaction

    @property
    def organization_id(self) -> int | None:
        return self._store.organization_id

    async def read(self, ring_group_id: int) -> RingGroupSnapshot | None:
        """Read a ring group and its members while holding the group lock.

        Raises:
            LockTimeout: The lock was not free within the configured wait.
        """
        if self.organization_id is None:
            return None
        async with self._guard.ring_group(self.organization_id, ring_group_id):
            return await self._store.get_ring_group(ring_group_id)

    async def read_unlocked(self, ring_group_id: int) -> RingGroupSnapshot | None:
        """Header-only fallback read; member data may be mid-replacement."""
        return await self._store.get_ring_group(ring_group_id)

    async def replace_members(
        self,
        ring_group_id: int,
        members: Sequence[tuple[int, int]],
    ) -> None:
        """Atomically replace the member set.

        Args:
            ring_group_id: Ring group to update.
            members: ``(extension_id, priority)`` pairs.

        Raises:
            LockTimeout: Another replace or read holds the lock; retry later.
            NotFound: Ring group does not exist for this tenant.
        """
        if self.organization_id is None or not await self._store.ring_group_exists(ring_group_id):
            raise NotFound(f"Ring group {ring_group_id} not found")

        try:
            async with self._guard.ring_group(self.organization_id, ring_group_id):
                try:
                    await self._store.replace_ring_group_members(ring_group_id, members)
                    if self._transaction is not None:
                        await self._transaction.commit()
                except Exception:
                    if self._transaction is not None:
                        await self._transaction.rollback()
                    raise
        except LockTimeout:
            logger.warning(
                "Ring group busy; member replacement rejected",
                extra={"organization_id": self.organization_id, "ring_group_id": ring_group_id},
            )
            raise

        logger.info(
            "Ring group members replaced",
            extra={
                "organization_id": self.organization_id,
                "ring_group_id": ring_group_id,
                "member_count": len(members),
            },
        )


__all__ = ["MembershipStore", "RingGroupMembershipService"]
