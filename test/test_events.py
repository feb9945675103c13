"""
Tests for asynchronous event parsing and CallLog maintenance.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from callrouting.routing.models import CallLog
from callrouting.shared.exceptions import BadRequest
from callrouting.webhooks.events import CallEvent, CallEventHandler, CallEventType


class TestCallEventParse:
    def test_platform_names(self):
        event = CallEvent.parse(
            CallEventType.CALL_STATUS,
            {"CallSid": "CA1", "CallStatus": "Ringing", "From": "+1 415 555 0100", "To": "+12125551234"},
        )
        assert event.call_id == "CA1"
        assert event.status == "ringing"
        assert event.from_number == "+14155550100"

    def test_cdr_disposition_implies_completed(self):
        event = CallEvent.parse(CallEventType.CDR, {"call_id": "x", "disposition": "ANSWER", "billsec": "12"})
        assert event.status == "completed"
        assert event.duration_seconds == 12

    @pytest.mark.parametrize(
        "value",
        [1_736_000_000, "1736000000", 1_736_000_000_000, "2025-01-04T14:13:20Z"],
    )
    def test_timestamp_formats(self, value):
        event = CallEvent.parse(CallEventType.CDR, {"call_id": "x", "startTime": value})
        assert event.started_at == datetime(2025, 1, 4, 14, 13, 20, tzinfo=timezone.utc)

    def test_unparseable_timestamp_ignored(self):
        event = CallEvent.parse(CallEventType.CDR, {"call_id": "x", "endTime": "yesterday"})
        assert event.ended_at is None

    def test_missing_call_id(self):
        with pytest.raises(BadRequest):
            CallEvent.parse(CallEventType.SESSION_UPDATE, {"status": "ringing"})


class TestCallEventHandler:
    @pytest.mark.asyncio
    async def test_lifecycle(self, db_session, seeded):
        handler = CallEventHandler(db_session)

        await handler.handle(
            seeded.acme_id,
            CallEvent.parse(CallEventType.CALL_STATUS, {"CallSid": "CA1", "CallStatus": "ringing", "From": "+14155550100"}),
        )
        await handler.handle(
            seeded.acme_id, CallEvent.parse(CallEventType.CALL_STATUS, {"CallSid": "CA1", "CallStatus": "answered"})
        )
        call_log = await handler.handle(
            seeded.acme_id,
            CallEvent.parse(CallEventType.CDR, {"call_id": "CA1", "disposition": "ANSWER", "duration": 30}),
        )

        assert call_log.status == "completed"
        assert call_log.from_number == "+14155550100"
        assert call_log.answered_at is not None
        assert call_log.ended_at is not None
        assert call_log.duration_seconds == 30
        assert call_log.last_event == "cdr"

        rows = (await db_session.execute(select(CallLog).where(CallLog.call_id == "CA1"))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_same_call_id_is_per_tenant(self, db_session, seeded):
        handler = CallEventHandler(db_session)
        event = CallEvent.parse(CallEventType.CALL_STATUS, {"CallSid": "shared", "CallStatus": "ringing"})

        await handler.handle(seeded.acme_id, event)
        await handler.handle(seeded.globex_id, event)

        rows = (await db_session.execute(select(CallLog).where(CallLog.call_id == "shared"))).scalars().all()
        assert sorted(r.organization_id for r in rows) == sorted([seeded.acme_id, seeded.globex_id])
