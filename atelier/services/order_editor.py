"""
Order edit operations that never change an order's stage
"""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from atelier.schemas.order import Measurements, Order, OrderItem
from atelier.schemas.stage import CHECKED_COLUMNS, Stage, parse_stage
from atelier.services.order_events import DELETED, RESTORED, OrderEventBus
from atelier.services.record_normalizer import RecordNormalizer
from atelier.services.record_store import Record, RecordStore, update_dropping_missing, utc_now
from atelier.services.stage_view import StageView
from atelier.utils.error_handler import NotFoundError, SchemaMismatch, ValidationError

logger = logging.getLogger(__name__)


class OrderEditor:
    """Checked flags, measurement and item corrections, soft delete and restore"""

    def __init__(
        self,
        store: RecordStore,
        normalizer: RecordNormalizer,
        views: Optional[Mapping[Stage, StageView]] = None,
        events: Optional[OrderEventBus] = None,
        collection: str = "orders",
    ):
        self.store = store
        self.normalizer = normalizer
        self.views: Dict[Stage, StageView] = dict(views or {})
        self.events = events
        self.collection = collection

    async def get_order(self, order_id: str) -> Order:
        return self.normalizer.normalize(await self._load(order_id))

    async def set_checked(self, order_id: str, checked: bool) -> Order:
        """Persist the operator flag of the order's current stage"""
        record = await self._load(order_id)
        stage = parse_stage(record.get("status"))
        column = CHECKED_COLUMNS.get(stage)
        if column is None:
            raise ValidationError(f"Orders at {stage.label if stage else record.get('status')} have no checked flag")

        view = self.views.get(stage)
        try:
            stored = await self.store.update(
                self.collection, order_id, {column: bool(checked)}, expected={"status": stage.value}
            )
        except SchemaMismatch as e:
            if column not in e.columns:
                raise
            # Not migrated yet; the flag lives in the view only
            logger.warning(f"Column {column} missing; keeping checked flag for order {order_id} locally")
            order = self.normalizer.normalize(record).model_copy(update={"checked": bool(checked)})
            if view is not None:
                view.mark_checked_locally(order_id, bool(checked))
            return order

        order = self.normalizer.normalize(stored)
        if view is not None:
            view.replace_order(order)
        logger.info(f"Order {order_id} {column} set to {bool(checked)}")
        return order

    async def update_measurements(
        self,
        order_id: str,
        measurements: Mapping[str, Any],
        item_index: Optional[int] = None,
    ) -> Order:
        """Correct measurements on the order, or on one item of a multi-item order"""
        if not isinstance(measurements, Mapping) or not measurements:
            raise ValidationError("At least one measurement is required")
        parsed = Measurements.from_mapping(measurements)
        if parsed.is_empty():
            raise ValidationError("No recognised measurement names were given")

        record = await self._load(order_id)
        items = self._stored_items(record)
        values = parsed.as_fields()

        if item_index is not None:
            if not items:
                raise ValidationError(f"Order {order_id} has no items array")
            if item_index < 0 or item_index >= len(items):
                raise ValidationError(f"Item index {item_index} is out of range")
            items[item_index] = dict(items[item_index], measurements=values)
            patch: Dict[str, Any] = {"items": items}
        else:
            patch = {"measurements": values}
            if len(items) == 1:
                items[0] = dict(items[0], measurements=values)
                patch["items"] = items

        stored = await self._write(order_id, patch)
        logger.info(f"Measurements updated for order {order_id}")
        return self._refresh_views(stored)

    async def update_items(
        self,
        order_id: str,
        items: Sequence[Any],
        total_price: Optional[float] = None,
    ) -> Order:
        """Replace the items array; the total is the given amount or the item sum"""
        if not items:
            raise ValidationError("An order needs at least one item")
        parsed: List[OrderItem] = []
        for item in items:
            if isinstance(item, OrderItem):
                parsed.append(item)
            elif isinstance(item, Mapping):
                parsed.append(OrderItem(**item))
            else:
                raise ValidationError("Items must be objects")
        if total_price is not None and total_price < 0:
            raise ValidationError("Total price cannot be negative")

        await self._load(order_id)
        stored_items = [
            {
                "product_name": item.product_name,
                "product_image": item.product_image,
                "color": item.color,
                "price": item.unit_price,
                "measurements": {} if item.measurements.is_empty() else item.measurements.as_fields(),
            }
            for item in parsed
        ]
        total = total_price if total_price is not None else sum(item.unit_price for item in parsed)
        stored = await self._write(order_id, {"items": stored_items, "total_price": total})
        logger.info(f"Items replaced for order {order_id} ({len(stored_items)} item(s))")
        return self._refresh_views(stored)

    async def soft_delete(self, order_id: str) -> Order:
        """Hide the order from every stage, remembering where it was"""
        record = await self._load(order_id)
        if record.get("deleted_at") is not None:
            raise NotFoundError(f"Order {order_id} is already deleted")
        status = record.get("status")
        stored, _ = await update_dropping_missing(
            self.store,
            self.collection,
            order_id,
            {"deleted_at": utc_now(), "original_status": status},
            ("original_status",),
            expected={"deleted_at": None},
        )
        order = self.normalizer.normalize(stored)
        stage = parse_stage(status)
        if stage is not None and stage in self.views:
            self.views[stage].remove_order(order_id)
        if self.events is not None:
            self.events.publish(DELETED, order)
        logger.info(f"Order {order_id} moved to deleted orders")
        return order

    async def restore(self, order_id: str) -> Order:
        """Bring a soft-deleted order back at its original stage"""
        record = await self._load(order_id)
        if record.get("deleted_at") is None:
            raise NotFoundError(f"Order {order_id} is not deleted")
        stage = parse_stage(record.get("original_status")) or Stage.PENDING
        stored, _ = await update_dropping_missing(
            self.store,
            self.collection,
            order_id,
            {"deleted_at": None, "original_status": None, "status": stage.value},
            ("original_status",),
        )
        order = self.normalizer.normalize(stored)
        if self.events is not None:
            self.events.publish(RESTORED, order)
        logger.info(f"Order {order_id} restored to {stage.label}")
        return order

    # -------------------- internals --------------------

    async def _load(self, order_id: str) -> Record:
        if not isinstance(order_id, str) or not order_id.strip():
            raise ValidationError("Order id is required")
        record = await self.store.get(self.collection, order_id)
        if record is None:
            raise NotFoundError(f"Order {order_id} not found")
        return record

    @staticmethod
    def _stored_items(record: Mapping[str, Any]) -> List[Dict[str, Any]]:
        items = record.get("items")
        if isinstance(items, str):
            try:
                items = json.loads(items)
            except ValueError:
                return []
        if not isinstance(items, list):
            return []
        return [dict(item) if isinstance(item, Mapping) else {} for item in items]

    async def _write(self, order_id: str, patch: Dict[str, Any]) -> Record:
        patch = dict(patch, updated_at=utc_now())
        stored, _ = await update_dropping_missing(
            self.store, self.collection, order_id, patch, ("updated_at",)
        )
        return stored

    def _refresh_views(self, stored: Record) -> Order:
        order = self.normalizer.normalize(stored)
        view = self.views.get(order.stage)
        if view is not None:
            view.replace_order(order)
        return order
