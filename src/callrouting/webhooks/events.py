"""
Asynchronous platform events (call status, session updates, CDRs).

Each event upserts the tenant's CallLog row for the call.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callrouting.routing.models import CallLog
from callrouting.routing.numbers import normalize_number
from callrouting.shared.exceptions import BadRequest
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)

_ANSWERED = frozenset({"answered", "in-progress", "connected"})
_ENDED = frozenset({"completed", "failed", "busy", "no-answer", "canceled", "cancelled", "hangup"})


class CallEventType(str, Enum):
    CALL_STATUS = "call_status"
    SESSION_UPDATE = "session_update"
    CDR = "cdr"


def _first(payload: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


def _timestamp(value: Any) -> datetime | None:
    """Epoch seconds, epoch milliseconds or ISO-8601."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        number = float(value)
        if number > 1e12:
            number /= 1000.0
        return datetime.fromtimestamp(number, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class CallEvent:
    event_type: CallEventType
    call_id: str
    status: str | None = None
    direction: str | None = None
    from_number: str | None = None
    to_number: str | None = None
    disposition: str | None = None
    duration_seconds: int | None = None
    started_at: datetime | None = None
    answered_at: datetime | None = None
    ended_at: datetime | None = None

    @classmethod
    def parse(cls, event_type: CallEventType, payload: Mapping[str, Any]) -> "CallEvent":
        """Build an event from a webhook payload.

        Raises:
            BadRequest: No call identifier in the payload.
        """
        call_id = _first(payload, "call_id", "CallSid", "callSid", "session", "token")
        if call_id is None:
            raise BadRequest("Missing call identifier", details={"event_type": event_type.value})

        caller = _first(payload, "from", "From", "callerId")
        dialed = _first(payload, "to", "To", "destination")
        status = _first(payload, "CallStatus", "status", "callStatus")
        disposition = _first(payload, "disposition", "Disposition")

        if event_type is CallEventType.CDR and status is None and disposition is not None:
            status = "completed"

        return cls(
            event_type=event_type,
            call_id=str(call_id),
            status=str(status).lower() if status is not None else None,
            direction=_first(payload, "direction", "Direction"),
            from_number=normalize_number(str(caller)) if caller is not None else None,
            to_number=normalize_number(str(dialed)) if dialed is not None else None,
            disposition=str(disposition) if disposition is not None else None,
            duration_seconds=_int(_first(payload, "duration", "CallDuration", "billsec")),
            started_at=_timestamp(_first(payload, "startTime", "start_time", "startedAt")),
            answered_at=_timestamp(_first(payload, "answerTime", "answer_time", "answeredAt")),
            ended_at=_timestamp(_first(payload, "endTime", "end_time", "endedAt")),
        )


class CallEventHandler:
    """Applies platform events to CallLog rows of one tenant."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _get(self, organization_id: int, call_id: str) -> CallLog | None:
        stmt = (
            select(CallLog)
            .where(CallLog.organization_id == organization_id)
            .where(CallLog.call_id == call_id)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def handle(self, organization_id: int, event: CallEvent) -> CallLog:
        now = datetime.now(timezone.utc)
        call_log = await self._get(organization_id, event.call_id)
        created = call_log is None
        if call_log is None:
            call_log = CallLog(
                organization_id=organization_id,
                call_id=event.call_id,
                status=event.status or "initiated",
                started_at=event.started_at or now,
            )
            self._session.add(call_log)

        if event.status:
            call_log.status = event.status
        if event.direction and not call_log.direction:
            call_log.direction = event.direction
        if event.from_number and not call_log.from_number:
            call_log.from_number = event.from_number
        if event.to_number and not call_log.to_number:
            call_log.to_number = event.to_number
        if event.disposition:
            call_log.disposition = event.disposition
        if event.duration_seconds is not None:
            call_log.duration_seconds = event.duration_seconds
        if event.started_at and not created:
            call_log.started_at = event.started_at

        if event.answered_at:
            call_log.answered_at = event.answered_at
        elif event.status in _ANSWERED and call_log.answered_at is None:
            call_log.answered_at = now

        if event.ended_at:
            call_log.ended_at = event.ended_at
        elif event.status in _ENDED and call_log.ended_at is None:
            call_log.ended_at = now

        call_log.last_event = event.event_type.value
        await self._session.flush()

        logger.info(
            "Call event applied",
            extra={
                "organization_id": organization_id,
                "call_id": event.call_id,
                "event_type": event.event_type.value,
                "status": call_log.status,
                "created": created,
            },
        )
        return call_log


__all__ = ["CallEvent", "CallEventHandler", "CallEventType"]
