"""
Transition coordinator

The only code path that changes an order's stage. Writes are conditional on
the stage the caller saw, so a concurrent writer (another operator, another
device) cannot be silently overwritten, and a repeated request is a no-op.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from atelier.schemas.order import Order, RESERVED_COLUMNS
from atelier.schemas.stage import Stage, event_kind_for, is_valid_transition, parse_stage
from atelier.services.order_events import OrderEventBus
from atelier.services.record_normalizer import RecordNormalizer
from atelier.services.record_store import Record, RecordStore, update_dropping_missing, utc_now
from atelier.services.stage_view import StageView
from atelier.utils.error_handler import (
    ConstraintViolation,
    InvalidTransition,
    NotFoundError,
    PipelineError,
    SchemaMismatch,
    TransientIO,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Columns a deployment may lack; the move still goes through without them
OPTIONAL_COLUMNS = ("completed_at", "updated_at", "deleted_at")


@dataclass(frozen=True)
class TransitionResult:
    """
    Result of a transition attempt.

    Attributes:
        ok: Whether the order is now at the requested stage
        order: The normalized order after the move, when ok
        error: The typed failure, when not ok
        changed: False when the order was already at the requested stage
    """
    ok: bool
    order: Optional[Order] = None
    error: Optional[PipelineError] = None
    changed: bool = False

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error is not None else None

    @classmethod
    def success(cls, order: Order, changed: bool = True) -> "TransitionResult":
        return cls(ok=True, order=order, changed=changed)

    @classmethod
    def failure(cls, error: PipelineError) -> "TransitionResult":
        return cls(ok=False, error=error)


class TransitionCoordinator:
    """Moves orders between stages"""

    def __init__(
        self,
        store: RecordStore,
        normalizer: RecordNormalizer,
        views: Optional[Mapping[Stage, StageView]] = None,
        events: Optional[OrderEventBus] = None,
        collection: str = "orders",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.normalizer = normalizer
        self.views: Dict[Stage, StageView] = dict(views or {})
        self.events = events
        self.collection = collection
        self.clock = clock or utc_now

    async def transition(
        self,
        order_id: str,
        from_stage: Any,
        to_stage: Any,
        extra_fields: Optional[Mapping[str, Any]] = None,
    ) -> TransitionResult:
        """Move one order from `from_stage` to `to_stage`; failures are returned, not raised"""
        try:
            order_id, source, target, extra = self._validate(order_id, from_stage, to_stage, extra_fields)
            return await self._transition(order_id, source, target, extra)
        except PipelineError as e:
            logger.warning(f"Transition of order {order_id} failed: {e.error_code} {e.message}")
            return TransitionResult.failure(e)
        except Exception as e:
            logger.error(f"Transition of order {order_id} failed unexpectedly: {e}")
            return TransitionResult.failure(TransientIO(f"Order store operation failed: {e}", e))

    # Convenience verbs for the operator actions

    async def accept(self, order_id: str, extra_fields: Optional[Mapping[str, Any]] = None) -> TransitionResult:
        return await self.transition(order_id, Stage.PENDING, Stage.IN_PROGRESS, extra_fields)

    async def deny(self, order_id: str, extra_fields: Optional[Mapping[str, Any]] = None) -> TransitionResult:
        return await self.transition(order_id, Stage.PENDING, Stage.CANCELLED, extra_fields)

    async def mark_done(self, order_id: str, extra_fields: Optional[Mapping[str, Any]] = None) -> TransitionResult:
        return await self.transition(order_id, Stage.IN_PROGRESS, Stage.TO_DELIVER, extra_fields)

    async def mark_delivered(self, order_id: str, extra_fields: Optional[Mapping[str, Any]] = None) -> TransitionResult:
        return await self.transition(order_id, Stage.TO_DELIVER, Stage.COMPLETED, extra_fields)

    # -------------------- internals --------------------

    @staticmethod
    def _validate(order_id, from_stage, to_stage, extra_fields) -> Tuple[str, Stage, Stage, Dict[str, Any]]:
        if not isinstance(order_id, str) or not order_id.strip():
            raise ValidationError("Order id is required")
        source = parse_stage(from_stage)
        if source is None:
            raise ValidationError(f"Unknown stage: {from_stage!r}")
        target = parse_stage(to_stage)
        if target is None:
            raise ValidationError(f"Unknown stage: {to_stage!r}")
        if extra_fields is None:
            extra: Dict[str, Any] = {}
        elif isinstance(extra_fields, Mapping):
            extra = dict(extra_fields)
        else:
            raise ValidationError("extra_fields must be a mapping")
        if any(not isinstance(key, str) for key in extra):
            raise ValidationError("extra_fields keys must be column names")
        reserved = sorted(RESERVED_COLUMNS.intersection(extra))
        if reserved:
            raise ValidationError(f"extra_fields may not set: {', '.join(reserved)}")
        return order_id.strip(), source, target, extra

    async def _transition(self, order_id: str, source: Stage, target: Stage, extra: Dict[str, Any]) -> TransitionResult:
        if source == target:
            record = await self.store.get(self.collection, order_id)
            if self._is_live_at(record, target):
                return TransitionResult.success(self.normalizer.normalize(record), changed=False)
            raise NotFoundError(f"Order {order_id} is not at {target.label}")

        if not is_valid_transition(source, target):
            raise InvalidTransition(f"Cannot move order from {source.label} to {target.label}")

        now = self.clock()
        patch = dict(extra)
        patch["status"] = target.value
        patch["updated_at"] = now
        if target == Stage.COMPLETED:
            patch["completed_at"] = now

        try:
            stored = await self._write(order_id, source, target, patch)
        except NotFoundError:
            current = await self.store.get(self.collection, order_id)
            if self._is_live_at(current, target):
                logger.info(f"Order {order_id} already at {target.label}; duplicate request ignored")
                return TransitionResult.success(self.normalizer.normalize(current), changed=False)
            raise

        order = self.normalizer.normalize(stored)
        source_view = self.views.get(source)
        if source_view is not None:
            source_view.remove_order(order_id)
        kind = event_kind_for(source, target)
        if self.events is not None and kind is not None:
            self.events.publish(kind, order)
        logger.info(f"Order {order_id} moved from {source.label} to {target.label}")
        return TransitionResult.success(order, changed=True)

    async def _write(self, order_id: str, source: Stage, target: Stage, patch: Dict[str, Any]) -> Record:
        conditional = self.store.supports_conditional_writes
        if not conditional:
            current = await self.store.get(self.collection, order_id)
            if not self._is_live_at(current, source):
                raise NotFoundError(f"Order {order_id} is not at {source.label}")

        # Soft-deleted orders never move
        expected = {"status": source.value, "deleted_at": None} if conditional else None
        try:
            stored, dropped = await update_dropping_missing(
                self.store, self.collection, order_id, patch, OPTIONAL_COLUMNS, expected=expected
            )
        except SchemaMismatch as e:
            raise ConstraintViolation(f"Order store rejected the update: {e.message}", e)
        if dropped:
            logger.warning(f"Order {order_id} moved without {', '.join(dropped)}")

        if not conditional:
            stored = await self.store.get(self.collection, order_id)
            if not self._is_live_at(stored, target):
                raise NotFoundError(f"Order {order_id} changed while it was being moved")
        return stored

    @staticmethod
    def _is_live_at(record: Optional[Record], stage: Stage) -> bool:
        return (
            record is not None
            and record.get("deleted_at") is None
            and parse_stage(record.get("status")) == stage
        )
