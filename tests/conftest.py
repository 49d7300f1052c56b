"""
Shared fixtures for the order pipeline tests
"""

import os
import tempfile

# Must be set before any atelier module reads its settings
_TEST_DIR = tempfile.mkdtemp(prefix="atelier-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["RECORD_STORE"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PERSIST_DIAGNOSTICS"] = "false"

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from atelier.models.customer import CustomerRecord
from atelier.models.order import ORDER_STATUSES, OrderRecord
from atelier.services.diagnostics import MemoryDiagnosticSink, ReconciliationDiagnostics
from atelier.services.record_normalizer import RecordNormalizer
from atelier.services.record_store import InMemoryRecordStore

ORDER_COLUMNS = [column.name for column in OrderRecord.__table__.columns]
CUSTOMER_COLUMNS = [column.name for column in CustomerRecord.__table__.columns]

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


async def settle(feed, rounds=5):
    """Let a change feed drain its stream and finish the callbacks it scheduled"""
    for _ in range(rounds):
        for _ in range(100):
            await asyncio.sleep(0)
            stream = feed._stream
            busy = stream is not None and stream.pending() > 0
            if not busy and not feed._tasks:
                await asyncio.sleep(0)
                break
            if feed._tasks:
                await asyncio.gather(*list(feed._tasks), return_exceptions=True)


def build_store(drop_columns=(), conditional_writes=True):
    """In-memory store with the production column set, minus `drop_columns`"""
    return InMemoryRecordStore(
        columns={
            "orders": [c for c in ORDER_COLUMNS if c not in drop_columns],
            "customers": CUSTOMER_COLUMNS,
        },
        constraints={"orders": {"status": ORDER_STATUSES}},
        conditional_writes=conditional_writes,
    )


@pytest.fixture
def diagnostic_sink():
    return MemoryDiagnosticSink()


@pytest.fixture
def diagnostics(diagnostic_sink):
    return ReconciliationDiagnostics(sinks=[diagnostic_sink], dedupe_seconds=0)


@pytest.fixture
def normalizer(diagnostics):
    return RecordNormalizer(diagnostics=diagnostics)


@pytest.fixture
def store():
    return build_store()


@pytest.fixture
def make_order():
    """Factory for stored order rows; later rows are created later"""
    counter = {"n": 0}

    def factory(**overrides):
        counter["n"] += 1
        row = {
            "id": str(uuid.uuid4()),
            "status": "pending",
            "customer_name": f"Customer {counter['n']}",
            "customer_phone": f"+25470000{counter['n']:04d}",
            "product_name": "Ankara Dress",
            "product_image": "https://img.example.com/dress.jpg",
            "color": "Blue",
            "price": 2500.0,
            "comments": "",
            "created_at": BASE_TIME + timedelta(minutes=counter["n"]),
            "deleted_at": None,
        }
        row.update(overrides)
        return row

    return factory
