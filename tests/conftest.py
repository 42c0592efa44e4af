"""Shared fixtures: a controllable clock, a recording transport and a wired pipeline."""

from dataclasses import dataclass

import pytest
import pytest_asyncio

from mail_scheduler.dispatch_queue import DispatchQueue
from mail_scheduler.persistence import MessageStore
from mail_scheduler.sqlite import SqliteDb
from mail_scheduler.transport import DeliveryInfo, MailTransport


class FakeClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class DummyTransport(MailTransport):
    """Records every send; the first ``failures`` calls raise."""

    def __init__(self, failures: int = 0, error: str = "SMTP unavailable"):
        self.sent = []
        self.calls = 0
        self.failures = failures
        self.error = error
        self.closed = False

    async def send(self, to, subject, html_body):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError(self.error)
        self.sent.append((to, subject, html_body))
        return DeliveryInfo(message_id=f"<{self.calls}@test>", response="250 OK")

    async def close(self):
        self.closed = True


@dataclass
class Pipeline:
    db: SqliteDb
    store: MessageStore
    queue: DispatchQueue


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return DummyTransport()


@pytest.fixture
def make_transport():
    return DummyTransport


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "scheduler.db")


@pytest_asyncio.fixture
async def pipeline(db_path, clock):
    db = SqliteDb(db_path)
    store = MessageStore(db, clock=clock)
    queue = DispatchQueue(db, clock=clock)
    await store.init_db()
    await queue.init_db()
    return Pipeline(db=db, store=store, queue=queue)
