"""
Tests for tenant-scoped repository reads and the tenant directory.
"""

from datetime import time

import pytest

from callrouting.routing.models import Extension, ExtensionType, RoutingType
from callrouting.routing.repository import RoutingRepository, TenantDirectory
from callrouting.routing.targets import ExtensionTarget, RingGroupTarget, ScheduleTarget, ServiceTarget
from callrouting.shared.exceptions import ConfigurationError


class TestRoutingRepository:
    @pytest.mark.asyncio
    async def test_did_lookup_parses_target(self, db_session, seeded):
        repository = RoutingRepository(db_session, seeded.acme_id)

        did = await repository.get_did(seeded.ring_group_did)
        assert did is not None
        assert did.target == RingGroupTarget(ring_group_id=seeded.sales_group)

        did = await repository.get_did(seeded.schedule_did)
        assert did.target == ScheduleTarget(schedule_id=seeded.schedule)

    @pytest.mark.asyncio
    async def test_other_tenant_entities_are_invisible(self, db_session, seeded):
        repository = RoutingRepository(db_session, seeded.globex_id)

        assert await repository.get_did(seeded.ring_group_did) is None
        assert await repository.get_extension("101") is None
        assert await repository.get_extension_by_id(seeded.ext_101) is None
        assert await repository.get_ring_group(seeded.sales_group) is None
        assert await repository.get_schedule(seeded.schedule) is None

    @pytest.mark.asyncio
    async def test_missing_tenant_returns_nothing(self, db_session, seeded):
        repository = RoutingRepository(db_session, None)

        assert await repository.get_did(seeded.ring_group_did) is None
        assert await repository.get_extension("101") is None
        assert await repository.get_ring_group(seeded.sales_group) is None
        assert await repository.reference_owner("extension", seeded.ext_101) is None

    @pytest.mark.asyncio
    async def test_ring_group_members_in_priority_order(self, db_session, seeded):
        group = await RoutingRepository(db_session, seeded.acme_id).get_ring_group(seeded.sales_group)

        assert group.timeout == 25
        assert [m.extension_number for m in group.members] == ["101", "102"]
        assert all(m.organization_id == seeded.acme_id for m in group.members)

    @pytest.mark.asyncio
    async def test_schedule_snapshot_uses_organization_timezone(self, db_session, seeded):
        schedule = await RoutingRepository(db_session, seeded.acme_id).get_schedule(seeded.schedule)

        assert schedule.timezone == "America/New_York"
        monday = schedule.day(0)
        assert monday.enabled is True
        assert monday.ranges[0].start == time(9, 0)
        assert schedule.day(5).enabled is False
        assert schedule.open_action == ExtensionTarget(extension_id=seeded.ext_101)
        assert schedule.closed_action.message == "Our office is closed."

    @pytest.mark.asyncio
    async def test_reference_owner_reports_foreign_tenant(self, db_session, seeded):
        repository = RoutingRepository(db_session, seeded.acme_id)
        assert await repository.reference_owner("extension", seeded.globex_ext_201) == seeded.globex_id
        assert await repository.reference_owner("unknown", 1) is None

    @pytest.mark.asyncio
    async def test_service_extension_snapshot(self, db_session, seeded):
        db_session.add(
            Extension(
                organization_id=seeded.acme_id,
                extension_number="500",
                name="Assistant",
                type=ExtensionType.AI_ASSISTANT,
                service_url="wss://ai.example.com/stream",
                service_token="tok",
                configuration={"provider": "vapi"},
            )
        )
        await db_session.flush()

        extension = await RoutingRepository(db_session, seeded.acme_id).get_extension("500")
        assert isinstance(extension.target, ServiceTarget)
        assert extension.target.provider == "vapi"
        assert extension.target.token == "tok"

    @pytest.mark.asyncio
    async def test_malformed_configuration_is_configuration_error(self, db_session, seeded):
        db_session.add(
            Extension(
                organization_id=seeded.acme_id,
                extension_number="600",
                name="Broken alias",
                type=ExtensionType.RING_GROUP,
                configuration={},
            )
        )
        await db_session.flush()

        with pytest.raises(ConfigurationError):
            await RoutingRepository(db_session, seeded.acme_id).get_extension("600")


class TestTenantDirectory:
    @pytest.mark.asyncio
    async def test_tenant_for_did(self, db_session, seeded):
        directory = TenantDirectory(db_session)
        assert await directory.tenant_for_did(seeded.ring_group_did) == seeded.acme_id
        assert await directory.tenant_for_did(seeded.globex_did) == seeded.globex_id
        assert await directory.tenant_for_did("+10000000000") is None

    @pytest.mark.asyncio
    async def test_inactive_extension_not_a_candidate(self, db_session, seeded):
        directory = TenantDirectory(db_session)
        assert await directory.tenants_for_extension("101") == [seeded.acme_id]
        assert await directory.tenants_for_extension("103") == []
        assert await directory.tenants_for_extension("101", [ExtensionType.AI_ASSISTANT]) == []

    @pytest.mark.asyncio
    async def test_domain_and_token(self, db_session, seeded):
        directory = TenantDirectory(db_session)
        assert await directory.tenant_for_domain("dom-globex") == seeded.globex_id
        assert await directory.tenant_for_domain("dom-unknown") is None
        assert await directory.bearer_token(seeded.acme_id) == "acme-token"

    def test_routing_types_cover_did_targets(self):
        assert {t.value for t in RoutingType} == {
            "extension",
            "ring_group",
            "business_hours",
            "conference_room",
            "ivr_menu",
        }
