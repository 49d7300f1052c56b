"""
Tests for the SQLAlchemy record store against temporary SQLite databases
"""

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from atelier.database import Base, build_async_engine
from atelier.models import customer, diagnostic_log, order  # noqa: F401
from atelier.schemas.stage import Stage
from atelier.services.diagnostics import (
    DatabaseDiagnosticSink,
    ReconciliationDiagnostics,
    Severity,
    recent_diagnostics,
)
from atelier.services.record_store import NOT_NULL, ChangeKind
from atelier.services.sql_record_store import SqlRecordStore
from atelier.services.stage_view import FulfilledView
from atelier.services.transition_coordinator import TransitionCoordinator
from atelier.utils.error_handler import ConstraintViolation, NotFoundError, SchemaMismatch

LEGACY_ORDERS_DDL = (
    "CREATE TABLE orders ("
    " id VARCHAR(36) PRIMARY KEY,"
    " status VARCHAR(20) NOT NULL,"
    " customer_name VARCHAR(150),"
    " product_name VARCHAR(200),"
    " price FLOAT,"
    " comments TEXT,"
    " created_at DATETIME,"
    " updated_at DATETIME,"
    " deleted_at DATETIME)"
)


def _async_engine(path):
    # Each asyncio.run gets a fresh loop, so connections are never pooled
    return build_async_engine(f"sqlite:///{path}", poolclass=NullPool)


@pytest.fixture
def engine(tmp_path):
    engine = _async_engine(tmp_path / "orders.db")

    async def create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def sql_store(engine):
    return SqlRecordStore(engine)


@pytest.fixture
def legacy_engine(tmp_path):
    """A deployment that never added completed_at or the checked flags"""
    engine = _async_engine(tmp_path / "legacy.db")

    async def create():
        async with engine.begin() as conn:
            await conn.execute(text(LEGACY_ORDERS_DDL))

    asyncio.run(create())
    yield engine
    asyncio.run(engine.dispose())


class TestCrud:
    """Basic reads and writes"""

    def test_insert_and_get_with_customer_join(self, sql_store):
        """Orders come back with their customer embedded"""
        async def scenario():
            await sql_store.insert("customers", {"id": "c1", "name": "Jane", "phone": "+254700000000"})
            await sql_store.insert("orders", {
                "id": "o1",
                "status": "in_progress",
                "customer_id": "c1",
                "items": [{"product_name": "Dress A", "color": "Red", "price": 2000}],
            })
            return await sql_store.get("orders", "o1")

        row = asyncio.run(scenario())

        assert row["customers"]["name"] == "Jane"
        assert row["items"][0]["product_name"] == "Dress A"
        assert row["created_at"] is not None

    def test_query_filters_and_sort(self, sql_store):
        """Null filters, NOT_NULL and descending sort with nulls last"""
        async def scenario():
            await sql_store.insert("orders", {"id": "a", "status": "pending", "created_at": datetime(2024, 1, 1)})
            await sql_store.insert("orders", {"id": "b", "status": "pending", "created_at": datetime(2024, 1, 3)})
            await sql_store.insert("orders", {"id": "c", "status": "pending", "deleted_at": datetime(2024, 1, 4)})
            await sql_store.insert("orders", {"id": "d", "status": "completed"})
            live = await sql_store.query(
                "orders", {"status": "pending", "deleted_at": None}, sort=[("created_at", True)]
            )
            deleted = await sql_store.query("orders", {"deleted_at": NOT_NULL})
            count = await sql_store.count("orders", {"status": "pending"})
            return live, deleted, count

        live, deleted, count = asyncio.run(scenario())

        assert [r["id"] for r in live] == ["b", "a"]
        assert [r["id"] for r in deleted] == ["c"]
        assert count == 3

    def test_conditional_update(self, sql_store):
        """An expected value that no longer holds matches zero rows"""
        async def scenario():
            await sql_store.insert("orders", {"id": "o1", "status": "pending"})
            updated = await sql_store.update("orders", "o1", {"status": "in_progress"}, expected={"status": "pending"})
            with pytest.raises(NotFoundError):
                await sql_store.update("orders", "o1", {"status": "in_progress"}, expected={"status": "pending"})
            with pytest.raises(NotFoundError):
                await sql_store.update("orders", "missing", {"status": "in_progress"})
            return updated

        assert asyncio.run(scenario())["status"] == "in_progress"

    def test_check_constraint_is_constraint_violation(self, sql_store):
        """The status check constraint maps to ConstraintViolation"""
        async def scenario():
            await sql_store.insert("orders", {"id": "o1", "status": "pending"})
            await sql_store.update("orders", "o1", {"status": "shipped"})

        with pytest.raises(ConstraintViolation):
            asyncio.run(scenario())

    def test_unknown_column_is_schema_mismatch(self, sql_store):
        """Columns are checked against the live table before any SQL runs"""
        async def scenario():
            await sql_store.insert("orders", {"id": "o1", "status": "pending"})
            await sql_store.update("orders", "o1", {"gift_wrap": True})

        with pytest.raises(SchemaMismatch) as excinfo:
            asyncio.run(scenario())

        assert excinfo.value.columns == ("gift_wrap",)

    def test_writes_publish_change_events(self, sql_store):
        """Subscribers see inserts and updates with before/after images"""
        async def scenario():
            stream = sql_store.subscribe("orders")
            await sql_store.insert("orders", {"id": "o1", "status": "pending"})
            await sql_store.update("orders", "o1", {"status": "in_progress"})
            events = [await stream.__anext__(), await stream.__anext__()]
            stream.close()
            return events

        inserted, updated = asyncio.run(scenario())

        assert inserted.kind == ChangeKind.INSERT
        assert updated.before["status"] == "pending"
        assert updated.after["status"] == "in_progress"

    def test_queries_leave_the_event_loop_free(self, sql_store):
        """Other tasks keep running while a query is in flight"""
        async def scenario():
            for n in range(20):
                await sql_store.insert("orders", {"id": f"o{n}", "status": "pending"})
            ticks = 0
            done = asyncio.Event()

            async def ticker():
                nonlocal ticks
                while not done.is_set():
                    ticks += 1
                    await asyncio.sleep(0)

            task = asyncio.create_task(ticker())
            await asyncio.sleep(0)
            before = ticks
            rows = await sql_store.query("orders", {"status": "pending"})
            during = ticks - before
            done.set()
            await task
            return len(rows), during

        count, during = asyncio.run(scenario())

        assert count == 20
        assert during > 0

    def test_missing_table_is_schema_mismatch(self, sql_store):
        """Reflecting a table the database lacks fails before any query"""
        with pytest.raises(SchemaMismatch):
            asyncio.run(sql_store.query("returns"))


class TestLegacyDeployment:
    """A table missing optional columns"""

    def test_completion_without_completed_at(self, legacy_engine, normalizer):
        """The move to completed succeeds without the stamp"""
        store = SqlRecordStore(legacy_engine)
        coordinator = TransitionCoordinator(store, normalizer)

        async def scenario():
            await store.insert("orders", {"id": "o1", "status": "to_deliver", "customer_name": "Jane"})
            return await coordinator.mark_delivered("o1")

        result = asyncio.run(scenario())

        assert result.ok is True
        assert result.order.stage == Stage.COMPLETED
        assert result.order.completed_at is None

    def test_fulfilled_view_loads_without_completed_at(self, legacy_engine, normalizer):
        """Fulfilled falls back to created_at ordering"""
        store = SqlRecordStore(legacy_engine)
        view = FulfilledView(store, normalizer)

        async def scenario():
            await store.insert("orders", {"id": "old", "status": "completed", "created_at": datetime(2024, 1, 1)})
            await store.insert("orders", {"id": "new", "status": "completed", "created_at": datetime(2024, 2, 1)})
            await view.load()

        asyncio.run(scenario())

        assert [o.id for o in view.get_orders()] == ["new", "old"]
        assert view.get_orders()[0].order_date == "2024-02-01"


class TestDiagnosticPersistence:
    """Diagnostics written to the diagnostic_logs table"""

    def test_database_sink_persists(self, tmp_path):
        """Emitted diagnostics can be read back newest first"""
        engine = create_engine(f"sqlite:///{tmp_path / 'diagnostics.db'}")
        Base.metadata.create_all(bind=engine)
        session_factory = sessionmaker(bind=engine)
        sink = DatabaseDiagnosticSink(session_factory)
        diagnostics = ReconciliationDiagnostics(sinks=[sink], dedupe_seconds=0)

        diagnostics.emit(Severity.WARNING, "o1", "customer_reference", "join missing")
        diagnostics.emit(Severity.INFO, "o2", "items_coexistence", "both shapes")

        db = session_factory()
        try:
            recent = recent_diagnostics(db, limit=10)
            assert len(recent) == 2
            assert {r.check_name for r in recent} == {"customer_reference", "items_coexistence"}
            assert len(recent_diagnostics(db, limit=1)) == 1
        finally:
            db.close()
            engine.dispose()

    def test_database_sink_swallows_failures(self, tmp_path):
        """A missing table is logged, not raised"""
        empty = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        sink = DatabaseDiagnosticSink(sessionmaker(bind=empty))
        diagnostics = ReconciliationDiagnostics(sinks=[sink], dedupe_seconds=0)

        diagnostics.emit(Severity.ERROR, "o1", "normalization_failure", "boom")

        empty.dispose()
