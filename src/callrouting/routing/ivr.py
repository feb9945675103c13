"""
Per-call IVR turn counting.
"""

from __future__ import annotations

from callrouting.shared.cache import STORE_ERRORS, StateStore
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)


class IvrTurnCounter:
    """Counts failed menu turns per (tenant, call, menu) on the state store."""

    def __init__(self, store: StateStore, ttl_seconds: int) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def _key(organization_id: int, call_id: str, menu_id: int) -> str:
        return f"ivr:turns:{organization_id}:{call_id}:{menu_id}"

    async def record_failure(self, organization_id: int, call_id: str, menu_id: int) -> int:
        """Increment and return the failed-turn count.

        Returns 1 when the store is unreachable, which replays the menu.
        """
        try:
            return await self._store.incr(
                self._key(organization_id, call_id, menu_id),
                ttl_seconds=self._ttl_seconds,
            )
        except STORE_ERRORS as e:
            logger.warning(
                "IVR turn counter unavailable",
                extra={"call_id": call_id, "ivr_menu_id": menu_id, "error": str(e)},
            )
            return 1

    async def reset(self, organization_id: int, call_id: str, menu_id: int) -> None:
        try:
            await self._store.delete(self._key(organization_id, call_id, menu_id))
        except STORE_ERRORS as e:
            logger.warning(
                "IVR turn counter not reset",
                extra={"call_id": call_id, "ivr_menu_id": menu_id, "error": str(e)},
            )
