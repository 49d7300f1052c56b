"""
SQLAlchemy record store

Works against the live table definitions (reflected, not the ORM models) so
a deployment that never ran a migration, e.g. one without `completed_at`,
gets a SchemaMismatch before any SQL is sent. All I/O goes through an
asyncio engine; reflection runs on the sync side via `run_sync`.
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import MetaData, Table, func, select, update
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from atelier.services.record_store import (
    NOT_NULL,
    ChangeBroadcaster,
    ChangeEvent,
    ChangeKind,
    Record,
    RecordStore,
)
from atelier.utils.error_handler import (
    DatabaseManager,
    NotFoundError,
    SchemaMismatch,
    ValidationError,
    classify_store_error,
)

logger = logging.getLogger(__name__)

# Relations embedded into rows on read; never written back
_JOIN_KEYS = ("customers", "products")


class SqlRecordStore(RecordStore):
    """RecordStore over any SQLAlchemy asyncio engine"""

    supports_conditional_writes = True

    def __init__(self, engine: AsyncEngine, session_factory=None):
        self.engine = engine
        self.session_factory = session_factory or async_sessionmaker(engine, expire_on_commit=False)
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._broadcaster = ChangeBroadcaster()

    async def close(self) -> None:
        await self.engine.dispose()

    # -------------------- RecordStore --------------------

    async def query(self, collection, filters=None, sort=None, limit=None):
        table = await self._table(collection)
        self._check_columns(table, list((filters or {}).keys()) + [c for c, _ in (sort or [])])
        customers = await self._customers_table(collection)

        stmt = select(table)
        for clause in self._where(table, filters):
            stmt = stmt.where(clause)
        for column, descending in sort or []:
            col = table.c[column]
            # Nulls last in both directions
            stmt = stmt.order_by(col.is_(None), col.desc() if descending else col.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with DatabaseManager(self.session_factory) as db:
            result = await db.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]
            return await self._attach_joins(db, customers, rows)

    async def get(self, collection, record_id):
        table = await self._table(collection)
        customers = await self._customers_table(collection)
        async with DatabaseManager(self.session_factory) as db:
            row = await self._fetch(db, table, record_id)
            if row is None:
                return None
            return (await self._attach_joins(db, customers, [row]))[0]

    async def count(self, collection, filters=None):
        table = await self._table(collection)
        self._check_columns(table, (filters or {}).keys())
        stmt = select(func.count()).select_from(table)
        for clause in self._where(table, filters):
            stmt = stmt.where(clause)
        async with DatabaseManager(self.session_factory) as db:
            result = await db.execute(stmt)
            return int(result.scalar_one())

    async def insert(self, collection, record):
        table = await self._table(collection)
        values = {k: v for k, v in dict(record).items() if k not in _JOIN_KEYS}
        values.setdefault("id", str(uuid.uuid4()))
        self._check_columns(table, values.keys())
        customers = await self._customers_table(collection)

        async with DatabaseManager(self.session_factory) as db:
            await db.execute(table.insert().values(**values))
            row = await self._fetch(db, table, values["id"])
            stored = (await self._attach_joins(db, customers, [row]))[0]

        logger.info(f"Inserted {collection}/{values['id']}")
        self._broadcaster.publish(ChangeEvent(ChangeKind.INSERT, collection, None, stored))
        return stored

    async def update(self, collection, record_id, patch, expected=None):
        if not patch:
            raise ValidationError("Update patch is empty")
        table = await self._table(collection)
        values = {k: v for k, v in dict(patch).items() if k not in _JOIN_KEYS}
        self._check_columns(table, list(values.keys()) + list((expected or {}).keys()))
        customers = await self._customers_table(collection)

        stmt = update(table).where(table.c.id == str(record_id))
        for clause in self._where(table, expected):
            stmt = stmt.where(clause)

        async with DatabaseManager(self.session_factory) as db:
            before = await self._fetch(db, table, record_id)
            if before is None:
                raise NotFoundError(f"{collection} record {record_id} not found")
            result = await db.execute(stmt.values(**values))
            if result.rowcount == 0:
                raise NotFoundError(f"{collection} record {record_id} did not match {dict(expected or {})}")
            after = await self._fetch(db, table, record_id)
            before, after = await self._attach_joins(db, customers, [before, after])

        logger.info(f"Updated {collection}/{record_id}: {', '.join(sorted(values))}")
        self._broadcaster.publish(ChangeEvent(ChangeKind.UPDATE, collection, before, after))
        return after

    def subscribe(self, collection, kinds=None):
        return self._broadcaster.open(collection, kinds)

    # -------------------- internals --------------------

    async def _table(self, collection: str) -> Table:
        table = self._tables.get(collection)
        if table is not None:
            return table
        try:
            async with self.engine.connect() as conn:
                table = await conn.run_sync(
                    lambda sync_conn: Table(collection, self._metadata, autoload_with=sync_conn)
                )
        except NoSuchTableError as e:
            raise SchemaMismatch(f"Table {collection} does not exist", columns=(), original_error=e)
        except SQLAlchemyError as e:
            raise classify_store_error(e)
        self._tables[collection] = table
        return table

    async def _customers_table(self, collection: str) -> Optional[Table]:
        """The table joined into order rows, if this deployment has one"""
        if collection != "orders":
            return None
        try:
            return await self._table("customers")
        except SchemaMismatch:
            return None

    @staticmethod
    def _check_columns(table: Table, columns: Iterable[str]) -> None:
        missing = sorted(set(c for c in columns if c not in table.c))
        if missing:
            raise SchemaMismatch(
                f"Column(s) {', '.join(missing)} do not exist on {table.name}",
                columns=missing,
            )

    @staticmethod
    def _where(table: Table, filters: Optional[Mapping[str, Any]]) -> List[Any]:
        clauses = []
        for column, value in (filters or {}).items():
            col = table.c[column]
            if value is None:
                clauses.append(col.is_(None))
            elif value is NOT_NULL:
                clauses.append(col.is_not(None))
            else:
                clauses.append(col == value)
        return clauses

    @staticmethod
    async def _fetch(db: AsyncSession, table: Table, record_id: str) -> Optional[Record]:
        result = await db.execute(select(table).where(table.c.id == str(record_id)))
        row = result.mappings().first()
        return dict(row) if row is not None else None

    @staticmethod
    async def _attach_joins(db: AsyncSession, customers: Optional[Table], rows: List[Record]) -> List[Record]:
        """Embed each order's customer under `customers`, as the hosted store does"""
        if customers is None or not rows:
            return rows
        customer_ids = {str(r["customer_id"]) for r in rows if r.get("customer_id") is not None}
        found: Dict[str, Record] = {}
        if customer_ids:
            result = await db.execute(select(customers).where(customers.c.id.in_(customer_ids)))
            found = {str(row["id"]): dict(row) for row in result.mappings().all()}
        for row in rows:
            if row.get("customer_id") is not None:
                row["customers"] = found.get(str(row["customer_id"]))
        return rows
