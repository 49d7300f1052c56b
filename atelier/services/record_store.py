"""
Record store interface, change streams and the in-memory store

The pipeline talks to storage only through `RecordStore`. Stores publish a
`ChangeEvent` for every insert, update and delete to the streams returned by
`subscribe()`.
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from atelier.utils.error_handler import (
    ConstraintViolation,
    NotFoundError,
    SchemaMismatch,
    ValidationError,
)

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
SortSpec = Sequence[Tuple[str, bool]]


class _NotNull:
    def __repr__(self):
        return "NOT_NULL"


# Filter value matching any non-null column value
NOT_NULL = _NotNull()


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """One row change; `before`/`after` are absent when the store does not send them"""
    kind: ChangeKind
    collection: str
    before: Optional[Record] = None
    after: Optional[Record] = None


_CLOSED = object()


class ChangeStream:
    """Async iterator over change events for one subscription"""

    def __init__(self, kinds: Optional[Iterable[ChangeKind]] = None, on_close: Optional[Callable[["ChangeStream"], None]] = None):
        self.kinds: Optional[Set[ChangeKind]] = set(kinds) if kinds else None
        self._on_close = on_close
        self._buffer: Deque[Any] = deque()
        self._waiter: Optional[asyncio.Future] = None
        self.closed = False

    def wants(self, event: ChangeEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def push(self, event: ChangeEvent) -> None:
        if self.closed or not self.wants(event):
            return
        self._put(event)

    def fail(self, error: Exception) -> None:
        """End the stream with an error raised to the consumer"""
        if self.closed:
            return
        self._put(error)
        self._detach()

    def close(self) -> None:
        if self.closed:
            return
        self._put(_CLOSED)
        self._detach()

    def pending(self) -> int:
        return sum(1 for item in self._buffer if isinstance(item, ChangeEvent))

    def _detach(self) -> None:
        self.closed = True
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback(self)

    def _put(self, item: Any) -> None:
        self._buffer.append(item)
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        while not self._buffer:
            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None
        item = self._buffer.popleft()
        if item is _CLOSED:
            self._buffer.appendleft(_CLOSED)
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self._buffer.appendleft(_CLOSED)
            raise item
        return item


class ChangeBroadcaster:
    """Fans events out to the open streams of each collection"""

    def __init__(self):
        self._streams: Dict[str, List[ChangeStream]] = {}

    def open(self, collection: str, kinds: Optional[Iterable[ChangeKind]] = None) -> ChangeStream:
        stream = ChangeStream(kinds, on_close=lambda s: self._discard(collection, s))
        self._streams.setdefault(collection, []).append(stream)
        return stream

    def publish(self, event: ChangeEvent) -> None:
        for stream in list(self._streams.get(event.collection, [])):
            stream.push(event)

    def fail_all(self, error: Exception) -> None:
        for streams in list(self._streams.values()):
            for stream in list(streams):
                stream.fail(error)

    def subscriber_count(self, collection: str) -> int:
        return len(self._streams.get(collection, []))

    def _discard(self, collection: str, stream: ChangeStream) -> None:
        streams = self._streams.get(collection, [])
        if stream in streams:
            streams.remove(stream)


class RecordStore(ABC):
    """Narrow async interface to persistent storage"""

    # True when update() honours `expected` atomically
    supports_conditional_writes: bool = True

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Equality filters; None matches null, NOT_NULL matches non-null"""

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    async def count(self, collection: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        ...

    @abstractmethod
    async def insert(self, collection: str, record: Mapping[str, Any]) -> Record:
        ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """Apply `patch` if the row exists and matches `expected`, else NotFoundError"""

    @abstractmethod
    def subscribe(self, collection: str, kinds: Optional[Iterable[ChangeKind]] = None) -> ChangeStream:
        """Open a change stream; events published after this call are delivered"""

    async def close(self) -> None:
        """Release connections held by the store"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def matches_filters(record: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    if not filters:
        return True
    for column, expected in filters.items():
        value = record.get(column)
        if expected is None:
            if value is not None:
                return False
        elif expected is NOT_NULL:
            if value is None:
                return False
        elif value != expected:
            return False
    return True


def sort_records(records: List[Record], sort: Optional[SortSpec]) -> List[Record]:
    """Stable multi-key sort; null values always sort last"""
    if not sort:
        return records
    ordered = list(records)
    for column, descending in reversed(list(sort)):
        present = [r for r in ordered if r.get(column) is not None]
        missing = [r for r in ordered if r.get(column) is None]
        present.sort(key=lambda r: _sort_key(r.get(column)), reverse=descending)
        ordered = present + missing
    return ordered


def _sort_key(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return value


async def update_dropping_missing(
    store: RecordStore,
    collection: str,
    record_id: str,
    patch: Mapping[str, Any],
    optional_columns: Iterable[str],
    expected: Optional[Mapping[str, Any]] = None,
) -> Tuple[Record, Tuple[str, ...]]:
    """
    Update, retrying once without optional columns this deployment lacks.

    Missing optional columns are dropped from both `patch` and `expected`.
    Returns the stored record and the columns that were dropped. A mismatch on
    any other column, or a second mismatch, is raised unchanged.
    """
    optional = set(optional_columns)
    try:
        return await store.update(collection, record_id, patch, expected=expected), ()
    except SchemaMismatch as e:
        missing = set(e.columns)
        if not missing or not missing.issubset(optional):
            raise
        reduced = {k: v for k, v in patch.items() if k not in missing}
        if expected:
            expected = {k: v for k, v in expected.items() if k not in missing}
        logger.warning(f"Retrying update of {collection}/{record_id} without {', '.join(sorted(missing))}")
        return await store.update(collection, record_id, reduced, expected=expected), tuple(sorted(missing))


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store for tests and the `memory` deployment.

    `columns` restricts the known columns per collection so a missing column
    behaves like a real deployment without it; `constraints` maps a column to
    its allowed values.
    """

    def __init__(
        self,
        columns: Optional[Mapping[str, Iterable[str]]] = None,
        constraints: Optional[Mapping[str, Mapping[str, Iterable[Any]]]] = None,
        conditional_writes: bool = True,
    ):
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._columns = {name: set(cols) for name, cols in (columns or {}).items()}
        self._constraints = {
            name: {col: set(values) for col, values in rules.items()}
            for name, rules in (constraints or {}).items()
        }
        self.supports_conditional_writes = conditional_writes
        self._broadcaster = ChangeBroadcaster()
        self._failures: Dict[str, Deque[Exception]] = {}
        self.write_attempts = 0
        self.writes = 0

    # -------------------- test hooks --------------------

    def seed(self, collection: str, records: Iterable[Mapping[str, Any]]) -> None:
        """Load rows without publishing events"""
        table = self._tables.setdefault(collection, {})
        for record in records:
            row = copy.deepcopy(dict(record))
            row.setdefault("id", str(uuid.uuid4()))
            table[str(row["id"])] = row

    def queue_failure(self, operation: str, error: Exception) -> None:
        """Make the next call of `operation` raise `error`"""
        self._failures.setdefault(operation, deque()).append(error)

    def disconnect_subscribers(self, error: Optional[Exception] = None) -> None:
        """Drop every open change stream as a lost connection would"""
        self._broadcaster.fail_all(error or ConnectionError("change stream disconnected"))

    def subscriber_count(self, collection: str) -> int:
        return self._broadcaster.subscriber_count(collection)

    def raw(self, collection: str, record_id: str) -> Optional[Record]:
        row = self._tables.get(collection, {}).get(str(record_id))
        return copy.deepcopy(row) if row is not None else None

    def put_external(self, collection: str, record_id: str, patch: Mapping[str, Any]) -> None:
        """Simulate a write by another client"""
        row = self._tables[collection][str(record_id)]
        before = copy.deepcopy(row)
        row.update(copy.deepcopy(dict(patch)))
        self._broadcaster.publish(ChangeEvent(ChangeKind.UPDATE, collection, before, copy.deepcopy(row)))

    # -------------------- RecordStore --------------------

    async def query(self, collection, filters=None, sort=None, limit=None):
        self._maybe_fail("query")
        self._check_columns(collection, list((filters or {}).keys()) + [c for c, _ in (sort or [])])
        rows = [r for r in self._tables.get(collection, {}).values() if matches_filters(r, filters)]
        rows = sort_records(rows, sort)
        if limit is not None:
            rows = rows[:limit]
        return [self._with_joins(collection, r) for r in rows]

    async def get(self, collection, record_id):
        self._maybe_fail("get")
        row = self._tables.get(collection, {}).get(str(record_id))
        return self._with_joins(collection, row) if row is not None else None

    async def count(self, collection, filters=None):
        self._maybe_fail("count")
        self._check_columns(collection, (filters or {}).keys())
        return sum(1 for r in self._tables.get(collection, {}).values() if matches_filters(r, filters))

    async def insert(self, collection, record):
        self._maybe_fail("insert")
        row = copy.deepcopy(dict(record))
        row.setdefault("id", str(uuid.uuid4()))
        self._check_columns(collection, row.keys())
        self._check_constraints(collection, row)
        table = self._tables.setdefault(collection, {})
        if str(row["id"]) in table:
            raise ConstraintViolation(f"Duplicate id {row['id']} in {collection}")
        table[str(row["id"])] = row
        self._broadcaster.publish(ChangeEvent(ChangeKind.INSERT, collection, None, copy.deepcopy(row)))
        return self._with_joins(collection, row)

    async def update(self, collection, record_id, patch, expected=None):
        self.write_attempts += 1
        self._maybe_fail("update")
        if not patch:
            raise ValidationError("Update patch is empty")
        self._check_columns(collection, list(patch.keys()) + list((expected or {}).keys()))
        self._check_constraints(collection, patch)
        row = self._tables.get(collection, {}).get(str(record_id))
        if row is None:
            raise NotFoundError(f"{collection} record {record_id} not found")
        if expected and not self.supports_conditional_writes:
            expected = None
        if expected and not matches_filters(row, expected):
            raise NotFoundError(f"{collection} record {record_id} did not match {dict(expected)}")
        before = copy.deepcopy(row)
        row.update(copy.deepcopy(dict(patch)))
        self.writes += 1
        self._broadcaster.publish(ChangeEvent(ChangeKind.UPDATE, collection, before, copy.deepcopy(row)))
        return self._with_joins(collection, row)

    def subscribe(self, collection, kinds=None):
        return self._broadcaster.open(collection, kinds)

    # -------------------- internals --------------------

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.popleft()

    def _check_columns(self, collection: str, columns: Iterable[str]) -> None:
        known = self._columns.get(collection)
        if known is None:
            return
        missing = sorted(set(c for c in columns if c not in known))
        if missing:
            raise SchemaMismatch(f"Column(s) {', '.join(missing)} do not exist on {collection}", columns=missing)

    def _check_constraints(self, collection: str, values: Mapping[str, Any]) -> None:
        for column, allowed in self._constraints.get(collection, {}).items():
            if column in values and values[column] is not None and values[column] not in allowed:
                raise ConstraintViolation(f"{collection}.{column} rejects value {values[column]!r}")

    def _with_joins(self, collection: str, row: Record) -> Record:
        result = copy.deepcopy(row)
        if collection == "orders" and result.get("customer_id") is not None:
            customer = self._tables.get("customers", {}).get(str(result["customer_id"]))
            result["customers"] = copy.deepcopy(customer) if customer is not None else None
        return result
