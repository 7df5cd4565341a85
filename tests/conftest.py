"""Shared fixtures for connector tests."""

import pytest
import pytest_asyncio

from fhirbridge.integrations.cerner import CernerConnector
from fhirbridge.integrations.epic import EpicConnector
from fhirbridge.security.audit import AuditLogger

from fakes import (
    CERNER_BASE,
    CERNER_TOKEN_URL,
    EPIC_BASE,
    EPIC_TOKEN_URL,
    FakeVendor,
    cerner_config,
    epic_config,
)


@pytest.fixture
def audit_sink():
    return AuditLogger()


@pytest.fixture
def fake_epic():
    return FakeVendor(EPIC_BASE, EPIC_TOKEN_URL)


@pytest.fixture
def fake_cerner():
    return FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)


@pytest_asyncio.fixture
async def epic(fake_epic, audit_sink):
    connector = EpicConnector(
        epic_config(),
        audit_sink=audit_sink,
        transport=fake_epic.transport,
    )
    yield connector
    await connector.aclose()


@pytest_asyncio.fixture
async def cerner(fake_cerner, audit_sink):
    connector = CernerConnector(
        cerner_config(),
        audit_sink=audit_sink,
        transport=fake_cerner.transport,
    )
    yield connector
    await connector.aclose()
