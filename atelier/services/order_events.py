"""
Cross-stage notifications and live stage counters
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from atelier.schemas.order import Order
from atelier.schemas.stage import EVENT_TRANSITIONS, Stage
from atelier.services.record_store import RecordStore
from atelier.utils.error_handler import SchemaMismatch

logger = logging.getLogger(__name__)

OrderMovedCallback = Callable[[str, Order], Any]

# Edit events published by OrderEditor alongside the transition kinds
DELETED = "deleted"
RESTORED = "restored"


class OrderEventBus:
    """Publishes (event_kind, order) after an order moves between stages"""

    def __init__(self):
        self._listeners: List[OrderMovedCallback] = []
        self.published = 0

    def on_order_moved(self, callback: OrderMovedCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def publish(self, kind: str, order: Order) -> None:
        self.published += 1
        logger.info(f"Order {order.id} {kind}")
        for listener in list(self._listeners):
            try:
                listener(kind, order)
            except Exception as e:
                logger.error(f"Order event listener failed for {kind}: {e}")


class PipelineStats:
    """
    Per-stage order counts for the dashboard.

    Loaded once from the store, then kept current from bus events so the
    dashboard never re-queries on every move.
    """

    def __init__(self, store: RecordStore, bus: Optional[OrderEventBus] = None, collection: str = "orders"):
        self.store = store
        self.collection = collection
        self.counts: Dict[Stage, int] = {stage: 0 for stage in Stage}
        self.loaded = False
        self._unsubscribe = bus.on_order_moved(self.handle) if bus is not None else None

    async def refresh(self) -> Dict[Stage, int]:
        counts = {}
        for stage in Stage:
            counts[stage] = await self._count(stage)
        self.counts = counts
        self.loaded = True
        return self.snapshot()

    async def _count(self, stage: Stage) -> int:
        try:
            return await self.store.count(self.collection, {"status": stage.value, "deleted_at": None})
        except SchemaMismatch as e:
            if "deleted_at" not in e.columns:
                raise
            return await self.store.count(self.collection, {"status": stage.value})

    def handle(self, kind: str, order: Order) -> None:
        edge = EVENT_TRANSITIONS.get(kind)
        if edge is not None:
            from_stage, to_stage = edge
            self._adjust(from_stage, -1)
            self._adjust(to_stage, 1)
        elif kind == DELETED:
            self._adjust(order.stage, -1)
        elif kind == RESTORED:
            self._adjust(order.stage, 1)

    def _adjust(self, stage: Stage, delta: int) -> None:
        self.counts[stage] = max(0, self.counts.get(stage, 0) + delta)

    def snapshot(self) -> Dict[Stage, int]:
        return dict(self.counts)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
