from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from chargeledger.api import build_services, create_app
from chargeledger.ledger import InMemoryLedger, LedgerHandle
from chargeledger.store import MemorySessionStore


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def handle(ledger):
    return LedgerHandle(ledger)


@pytest.fixture
def services(store, handle, clock):
    return build_services(store, handle, run_queue=False, clock=clock)


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


@pytest.fixture
def queue(services):
    return services.queue


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
