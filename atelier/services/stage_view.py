"""
Stage views

Each view holds the normalized orders of one stage. It reloads its whole
snapshot whenever the change feed reports a record entering or leaving the
stage, and tells observers when the snapshot changes.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from atelier.schemas.order import Order
from atelier.schemas.stage import Stage, parse_stage
from atelier.services.change_feed import ChangeFeedAdapter
from atelier.services.record_normalizer import RecordNormalizer
from atelier.services.record_store import RecordStore
from atelier.utils.error_handler import PipelineError, SchemaMismatch, classify_store_error

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[Order]], Any]


class ViewState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


def stage_predicate(stage: Stage) -> Callable[[Mapping[str, Any]], bool]:
    """True for live (not soft-deleted) records at `stage`"""
    def predicate(record: Mapping[str, Any]) -> bool:
        return parse_stage(record.get("status")) == stage and record.get("deleted_at") is None
    return predicate


def _search_values(order: Order, field: str) -> List[str]:
    if field == "customer":
        return [order.customer.name]
    if field == "phone":
        return [order.customer.phone]
    if field == "product":
        return [item.product_name for item in order.items]
    if field == "color":
        return [item.color for item in order.items]
    if field == "id":
        return [order.id]
    return []


class StageView:
    """Snapshot of the orders at one stage"""

    stage: Stage = Stage.PENDING
    sort: Sequence[Tuple[str, bool]] = (("created_at", True),)
    search_fields: Sequence[str] = ("customer",)
    # Columns the view can do without when a deployment lacks them
    optional_columns: Sequence[str] = ("deleted_at", "created_at", "completed_at")

    def __init__(
        self,
        store: RecordStore,
        normalizer: RecordNormalizer,
        change_feed: Optional[ChangeFeedAdapter] = None,
        collection: str = "orders",
        staleness_window: Optional[float] = None,
    ):
        self.store = store
        self.normalizer = normalizer
        self.change_feed = change_feed
        self.collection = collection
        self.staleness_window = staleness_window
        self.predicate = stage_predicate(self.stage)

        self.state = ViewState.UNINITIALIZED
        self.last_error: Optional[PipelineError] = None
        self._orders: List[Order] = []
        self._checked_overlay: Dict[str, bool] = {}
        self._observers: List[SnapshotCallback] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def name(self) -> str:
        return self.stage.label

    # -------------------- lifecycle --------------------

    async def start(self) -> ViewState:
        """Subscribe before the first load so no change is missed in between"""
        if self.change_feed is not None and self._unsubscribe is None:
            self._unsubscribe = self.change_feed.subscribe(self.predicate, self._on_change)
        return await self.load()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _on_change(self, event) -> None:
        await self.load()

    @property
    def is_stale(self) -> bool:
        if self.change_feed is None:
            return False
        if self.staleness_window is None:
            return self.change_feed.staleness_exceeded
        return self.change_feed.is_degraded and self.change_feed.degraded_for() > self.staleness_window

    # -------------------- loading --------------------

    async def load(self) -> ViewState:
        """Replace the snapshot from the store; failures keep the previous one"""
        self.state = ViewState.LOADING
        filters = {"status": self.stage.value, "deleted_at": None}
        try:
            rows = await self._query(filters, list(self.sort))
        except Exception as e:
            error = classify_store_error(e)
            self.state = ViewState.ERROR
            self.last_error = error
            logger.error(f"{self.name} view failed to load: {error.message}")
            return self.state

        orders = []
        for row in rows:
            if not self.predicate(row):
                continue
            order = self.normalizer.normalize(row)
            if order.id in self._checked_overlay:
                order = order.model_copy(update={"checked": self._checked_overlay[order.id]})
            orders.append(order)

        self._orders = orders
        # Flags of orders that left the stage are forgotten
        present = {order.id for order in orders}
        self._checked_overlay = {k: v for k, v in self._checked_overlay.items() if k in present}
        self.state = ViewState.READY
        self.last_error = None
        logger.debug(f"{self.name} view loaded {len(orders)} order(s)")
        self._notify()
        return self.state

    async def _query(self, filters: Dict[str, Any], sort: List[Tuple[str, bool]]) -> List[Dict[str, Any]]:
        try:
            return await self.store.query(self.collection, filters=filters, sort=sort)
        except SchemaMismatch as e:
            missing = set(e.columns)
            if not missing or not missing.issubset(self.optional_columns):
                raise
            logger.warning(f"{self.name} view reloading without missing column(s): {', '.join(sorted(missing))}")
            filters = {k: v for k, v in filters.items() if k not in missing}
            sort = [(column, desc) for column, desc in sort if column not in missing]
            return await self.store.query(self.collection, filters=filters, sort=sort)

    # -------------------- reads --------------------

    def get_orders(self) -> List[Order]:
        return [order.model_copy(deep=True) for order in self._orders]

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self._orders:
            if order.id == order_id:
                return order.model_copy(deep=True)
        return None

    def contains(self, order_id: str) -> bool:
        return any(order.id == order_id for order in self._orders)

    @property
    def count(self) -> int:
        return len(self._orders)

    def apply_search_filter(self, term: Optional[str]) -> List[Order]:
        """Case-insensitive substring match over the view's search fields"""
        needle = (term or "").strip().lower()
        if not needle:
            return self.get_orders()
        return [
            order.model_copy(deep=True)
            for order in self._orders
            if any(
                needle in value.lower()
                for field in self.search_fields
                for value in _search_values(order, field)
            )
        ]

    # -------------------- local edits --------------------

    def on_snapshot_changed(self, callback: SnapshotCallback) -> Callable[[], None]:
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def remove_order(self, order_id: str) -> bool:
        """Drop an order ahead of the change feed echo; removing twice is harmless"""
        self._checked_overlay.pop(order_id, None)
        remaining = [order for order in self._orders if order.id != order_id]
        if len(remaining) == len(self._orders):
            return False
        self._orders = remaining
        self._notify()
        return True

    def replace_order(self, order: Order) -> None:
        """Swap in an edited order, or drop it if it no longer belongs here"""
        if order.stage != self.stage:
            self.remove_order(order.id)
            return
        if order.id in self._checked_overlay:
            order = order.model_copy(update={"checked": self._checked_overlay[order.id]})
        for index, existing in enumerate(self._orders):
            if existing.id == order.id:
                self._orders[index] = order
                self._notify()
                return

    def mark_checked_locally(self, order_id: str, checked: bool) -> None:
        """Keep the flag in this view when the deployment cannot store it"""
        self._checked_overlay[order_id] = checked
        for index, existing in enumerate(self._orders):
            if existing.id == order_id:
                self._orders[index] = existing.model_copy(update={"checked": checked})
                self._notify()
                return

    def _notify(self) -> None:
        snapshot = self.get_orders()
        for callback in list(self._observers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"{self.name} view observer failed: {e}")


class IntakeView(StageView):
    stage = Stage.PENDING


class ProductionView(StageView):
    stage = Stage.IN_PROGRESS
    sort = (("updated_at", True), ("created_at", True))
    optional_columns = ("deleted_at", "created_at", "updated_at", "completed_at")


class DispatchView(StageView):
    stage = Stage.TO_DELIVER
    sort = (("updated_at", True), ("created_at", True))
    optional_columns = ("deleted_at", "created_at", "updated_at", "completed_at")


class FulfilledView(StageView):
    stage = Stage.COMPLETED
    sort = (("completed_at", True), ("created_at", True))
    search_fields = ("customer", "phone", "product", "color")


VIEW_CLASSES = {
    Stage.PENDING: IntakeView,
    Stage.IN_PROGRESS: ProductionView,
    Stage.TO_DELIVER: DispatchView,
    Stage.COMPLETED: FulfilledView,
}
