from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from carewatch.core.security import create_access_token
from carewatch.main import app
from carewatch.modules.alerts.config import AlertPolicy
from carewatch.modules.alerts.models import Channel
from carewatch.modules.alerts.recipients import (
    CareRelationship,
    ContactPoints,
    RelationshipType,
    StaticRecipientDirectory,
)
from carewatch.modules.alerts.service import AlertEngine, build_engine, get_engine
from carewatch.modules.alerts.store import InMemoryAlertStore
from tests.modules.alerts.helpers import (
    PATIENT_ID,
    PRIMARY_CHAT,
    PRIMARY_EMAIL,
    PRIMARY_PHONE,
    SECONDARY_CHAT,
    SECONDARY_EMAIL,
    SECONDARY_PHONE,
    FakeClock,
    MemoryAuditLog,
    ScriptedChannel,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> AlertPolicy:
    return AlertPolicy()


@pytest.fixture
def store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def relationships() -> list[CareRelationship]:
    return [
        CareRelationship(
            id="rel-primary",
            patient_id=PATIENT_ID,
            caregiver_id="caregiver-ana",
            relationship_type=RelationshipType.PRIMARY_CAREGIVER,
            contacts=ContactPoints(
                email=PRIMARY_EMAIL, bot_chat_id=PRIMARY_CHAT, whatsapp_phone=PRIMARY_PHONE
            ),
        ),
        CareRelationship(
            id="rel-secondary",
            patient_id=PATIENT_ID,
            caregiver_id="caregiver-bruno",
            relationship_type=RelationshipType.FAMILY_MEMBER,
            escalation_only=True,
            contacts=ContactPoints(
                email=SECONDARY_EMAIL, bot_chat_id=SECONDARY_CHAT, whatsapp_phone=SECONDARY_PHONE
            ),
        ),
    ]


@pytest.fixture
def directory(relationships: list[CareRelationship]) -> StaticRecipientDirectory:
    return StaticRecipientDirectory(relationships)


@pytest.fixture
def channels() -> dict[Channel, ScriptedChannel]:
    return {channel: ScriptedChannel(channel) for channel in Channel}


@pytest.fixture
def audit_log() -> MemoryAuditLog:
    return MemoryAuditLog()


@pytest.fixture
async def engine(
    store: InMemoryAlertStore,
    directory: StaticRecipientDirectory,
    channels: dict[Channel, ScriptedChannel],
    policy: AlertPolicy,
    audit_log: MemoryAuditLog,
    clock: FakeClock,
) -> AsyncGenerator[AlertEngine, None]:
    alert_engine = build_engine(
        store=store,
        directory=directory,
        channels=list(channels.values()),
        policy=policy,
        audit_log=audit_log,
        clock=clock,
    )
    yield alert_engine
    await alert_engine.tasks.drain()


@pytest.fixture
async def client(engine: AlertEngine) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client
    app.dependency_overrides.pop(get_engine, None)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    token = create_access_token("caregiver-ana", roles=["CAREGIVER"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def roleless_headers() -> dict[str, str]:
    token = create_access_token("viewer-1")
    return {"Authorization": f"Bearer {token}"}
