"""
Pytest configuration and fixtures for the call routing tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import time
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from callrouting.routing.config import RoutingConfig
from callrouting.routing.models import (
    BusinessHoursDay,
    BusinessHoursSchedule,
    BusinessHoursTimeRange,
    DidNumber,
    EntityStatus,
    Extension,
    ExtensionType,
    Organization,
    RingGroup,
    RingGroupMember,
    RingGroupStrategy,
    RoutingType,
    WebhookCredential,
)
from callrouting.shared.cache import MemoryStateStore
from callrouting.shared.database import Base
from callrouting.webhooks.config import WebhookConfig

TEST_HMAC_SECRET = "test-hmac-secret"
ACME_TOKEN = "acme-token"
GLOBEX_TOKEN = "globex-token"


@pytest.fixture
def routing_config() -> RoutingConfig:
    """Routing config with short lock waits for fast tests."""
    return RoutingConfig(
        ring_group_lock_wait_seconds=0.3,
        call_lock_wait_seconds=0.3,
        lock_retry_interval_seconds=0.02,
    )


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(hmac_secret=TEST_HMAC_SECRET)


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[Any, None]:
    """Create test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: Any) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@dataclass
class SeededTenants:
    """Ids of the two seeded organizations and their routing entities."""

    acme_id: int
    globex_id: int
    ext_101: int
    ext_102: int
    ext_103_inactive: int
    globex_ext_201: int
    sales_group: int
    schedule: int
    ring_group_did: str = "+12125551234"
    schedule_did: str = "+12125550000"
    extension_did: str = "+12125559999"
    globex_did: str = "+13125550000"


@pytest_asyncio.fixture
async def seeded(db_session: AsyncSession) -> SeededTenants:
    """Two tenants: Acme (routing fixtures) and Globex (isolation checks)."""
    acme = Organization(
        name="Acme",
        status=EntityStatus.ACTIVE,
        timezone="America/New_York",
        domain_uuid="dom-acme",
    )
    globex = Organization(name="Globex", status=EntityStatus.ACTIVE, timezone="UTC", domain_uuid="dom-globex")
    db_session.add_all([acme, globex])
    await db_session.flush()

    db_session.add_all(
        [
            WebhookCredential(organization_id=acme.id, bearer_token=ACME_TOKEN, is_active=True),
            WebhookCredential(organization_id=globex.id, bearer_token=GLOBEX_TOKEN, is_active=True),
        ]
    )

    ext_101 = Extension(
        organization_id=acme.id,
        extension_number="101",
        name="Alice",
        type=ExtensionType.USER,
        status=EntityStatus.ACTIVE,
        sip_uri="101@acme.sip.example",
    )
    ext_102 = Extension(
        organization_id=acme.id,
        extension_number="102",
        name="Bob",
        type=ExtensionType.USER,
        status=EntityStatus.ACTIVE,
        sip_uri="102@acme.sip.example",
    )
    ext_103 = Extension(
        organization_id=acme.id,
        extension_number="103",
        name="Carol",
        type=ExtensionType.USER,
        status=EntityStatus.INACTIVE,
        sip_uri="103@acme.sip.example",
    )
    globex_201 = Extension(
        organization_id=globex.id,
        extension_number="201",
        name="Globex agent",
        type=ExtensionType.USER,
        status=EntityStatus.ACTIVE,
        sip_uri="201@globex.sip.example",
    )
    db_session.add_all([ext_101, ext_102, ext_103, globex_201])
    await db_session.flush()

    sales = RingGroup(
        organization_id=acme.id,
        name="Sales",
        strategy=RingGroupStrategy.SIMULTANEOUS,
        timeout=25,
        ring_turns=1,
        status=EntityStatus.ACTIVE,
    )
    db_session.add(sales)
    await db_session.flush()
    db_session.add_all(
        [
            RingGroupMember(ring_group_id=sales.id, extension_id=ext_101.id, priority=1),
            RingGroupMember(ring_group_id=sales.id, extension_id=ext_102.id, priority=2),
        ]
    )

    schedule = BusinessHoursSchedule(
        organization_id=acme.id,
        name="Office hours",
        status=EntityStatus.ACTIVE,
        open_hours_action={"type": "extension", "target_id": ext_101.id},
        closed_hours_action={"type": "hangup", "message": "Our office is closed."},
    )
    db_session.add(schedule)
    await db_session.flush()
    for weekday in range(7):
        day = BusinessHoursDay(schedule_id=schedule.id, day_of_week=weekday, enabled=weekday < 5)
        db_session.add(day)
        await db_session.flush()
        if weekday < 5:
            db_session.add(
                BusinessHoursTimeRange(day_id=day.id, start_time=time(9, 0), end_time=time(17, 0))
            )

    db_session.add_all(
        [
            DidNumber(
                organization_id=acme.id,
                phone_number="+12125551234",
                routing_type=RoutingType.RING_GROUP,
                routing_config={"ring_group_id": sales.id},
                status=EntityStatus.ACTIVE,
            ),
            DidNumber(
                organization_id=acme.id,
                phone_number="+12125550000",
                routing_type=RoutingType.BUSINESS_HOURS,
                routing_config={"business_hours_schedule_id": schedule.id},
                status=EntityStatus.ACTIVE,
            ),
            DidNumber(
                organization_id=acme.id,
                phone_number="+12125559999",
                routing_type=RoutingType.EXTENSION,
                routing_config={"extension_id": ext_101.id},
                status=EntityStatus.ACTIVE,
            ),
            DidNumber(
                organization_id=globex.id,
                phone_number="+13125550000",
                routing_type=RoutingType.EXTENSION,
                routing_config={"extension_id": globex_201.id},
                status=EntityStatus.ACTIVE,
            ),
        ]
    )
    await db_session.commit()

    return SeededTenants(
        acme_id=acme.id,
        globex_id=globex.id,
        ext_101=ext_101.id,
        ext_102=ext_102.id,
        ext_103_inactive=ext_103.id,
        globex_ext_201=globex_201.id,
        sales_group=sales.id,
        schedule=schedule.id,
    )


@pytest.fixture
def app_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Environment consumed by the settings classes inside request handlers."""
    monkeypatch.setenv("WEBHOOK_HMAC_SECRET", TEST_HMAC_SECRET)
    monkeypatch.setenv("INTERNAL_API_TOKEN", "internal-secret")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://routing.example.com")
    monkeypatch.setenv("STATE_BACKEND", "memory")
    monkeypatch.setenv("ROUTING_CALL_LOCK_WAIT_SECONDS", "0.3")
    monkeypatch.setenv("ROUTING_RING_GROUP_LOCK_WAIT_SECONDS", "0.3")


@pytest_asyncio.fixture
async def async_client(
    app_env: None,
    db_session: AsyncSession,
    state_store: MemoryStateStore,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the ASGI app with DB and state store overridden."""
    from callrouting.main import app
    from callrouting.shared.database import get_db_session
    from callrouting.webhooks.dependencies import get_store

    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db_session] = _override_get_db_session
    app.dependency_overrides[get_store] = lambda: state_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
