"""
Shared fixtures: an in-memory store, a one-organization directory, an
in-process webhook outbox and a fake clock wired into an EventPipeline.
"""
import pytest

from tracking_service.core.circuit_breaker import reset_all_circuit_breakers
from tracking_service.core.config import Settings
from tracking_service.orchestrator import EventPipeline, InMemoryCampaignDirectory, InMemoryOutbox
from tracking_service.store import MemoryStore

from tests.factories import FakeClock, make_campaign, make_organization


@pytest.fixture(autouse=True)
def _reset_breakers():
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None, REDIS_URL=None, CAMPAIGN_CONFIG_PATH=None, WEBHOOK_SECRET="")


@pytest.fixture
def store():
    return MemoryStore(lock_timeout=1.0)


@pytest.fixture
def outbox():
    return InMemoryOutbox()


@pytest.fixture
def directory():
    return InMemoryCampaignDirectory([make_organization()], [make_campaign()])


@pytest.fixture
def pipeline(store, directory, outbox, settings, clock):
    return EventPipeline(store, directory, outbox, settings=settings, clock=clock)
