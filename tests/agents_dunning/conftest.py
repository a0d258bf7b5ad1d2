"""Fixtures for dunning engine tests.

Everything runs against the in-memory stores or an in-memory SQLite
database; no test reaches the network.
"""

from datetime import date

import pytest

from agents.dunning.clock import FixedClock
from agents.dunning.config import DunningConfig
from agents.dunning.stores import (
    InMemoryObligationStore,
    InMemoryTemplateStore,
    InMemoryWorkflowStore,
)
from tests.agents_dunning.factories import OWNER_ID, TODAY, RecordingDelivery


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(TODAY)


@pytest.fixture
def config() -> DunningConfig:
    return DunningConfig(
        owner_id=OWNER_ID,
        chunk_size=100,
        max_workers=1,
        company_name="Acme Supplies",
        payment_link="https://pay.example.com/acme",
    )


@pytest.fixture
def obligation_store() -> InMemoryObligationStore:
    return InMemoryObligationStore()


@pytest.fixture
def workflow_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def template_store() -> InMemoryTemplateStore:
    return InMemoryTemplateStore()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()
