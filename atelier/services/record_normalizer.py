"""
Record normalization

Stored order rows come in several shapes: legacy single-product rows with
flat columns, multi-item rows with an `items` JSON array, rows with the
customer embedded in flat columns or joined from `customers`, measurements
in a structured column or buried in the comments. `RecordNormalizer`
turns any of them into one canonical `Order` and never raises.
"""

import json
import logging
from datetime import date, datetime
from typing import Any, List, Mapping, Optional, Tuple

from atelier.schemas.order import (
    Customer,
    Measurements,
    Order,
    OrderItem,
    PLACEHOLDER_IMAGE,
    UNKNOWN_CUSTOMER,
    UNKNOWN_PRODUCT,
)
from atelier.schemas.stage import CHECKED_COLUMNS, Stage, parse_stage
from atelier.services.diagnostics import ReconciliationDiagnostics, Severity, has_customer_reference
from atelier.services.measurement_extractor import MeasurementExtractor, default_extractor

logger = logging.getLogger(__name__)

_ITEM_KEYS = {
    "product_name": ("product_name", "productName", "name"),
    "product_image": ("product_image", "productImage", "image_url", "imageUrl", "image"),
    "color": ("color", "colour"),
    "price": ("price", "unit_price", "unitPrice"),
    "measurements": ("measurements",),
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """datetime, date or ISO-8601 string to datetime; None when unusable"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def format_date(value: Optional[datetime]) -> str:
    """YYYY-MM-DD, or empty when there is no date"""
    if value is None:
        return ""
    return value.strftime("%Y-%m-%d")


def parse_price(value: Any) -> Optional[float]:
    """Numbers and numeric strings such as "2,000" or "KES 1500"; None when unusable"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        for prefix in ("KES", "KSH", "KSh", "Ksh"):
            if text.startswith(prefix):
                text = text[len(prefix):].strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first(data: Mapping[str, Any], keys) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class RecordNormalizer:
    """Maps raw stored rows onto the canonical Order"""

    def __init__(
        self,
        diagnostics: Optional[ReconciliationDiagnostics] = None,
        extractor: Optional[MeasurementExtractor] = None,
        placeholder_image: str = PLACEHOLDER_IMAGE,
    ):
        self.diagnostics = diagnostics or ReconciliationDiagnostics()
        self.extractor = extractor or default_extractor
        self.placeholder_image = placeholder_image

    def normalize(self, raw: Mapping[str, Any]) -> Order:
        """Normalize one stored record; malformed input degrades, it never raises"""
        order_id = None
        try:
            if not isinstance(raw, Mapping):
                raise TypeError(f"record must be a mapping, got {type(raw).__name__}")
            order_id = _text(raw.get("id")) or None
            return self._normalize(raw, order_id)
        except Exception as e:
            logger.error(f"Normalization failed for order {order_id}: {e}")
            self.diagnostics.emit(Severity.ERROR, order_id, "normalization_failure", str(e))
            return self._fallback(raw, order_id)

    # -------------------- internals --------------------

    def _normalize(self, raw: Mapping[str, Any], order_id: Optional[str]) -> Order:
        stage = self._stage(raw, order_id)
        customer = self._customer(raw, order_id)
        items, from_array = self._items(raw, order_id)
        self.diagnostics.check_items_coexistence(raw, order_id, from_array)

        measurements, comments = self._measurements(raw, order_id)
        # Single-item orders carry their measurements on the order itself
        if len(items) == 1 and items[0].measurements.is_empty() and not measurements.is_empty():
            items[0] = items[0].model_copy(update={"measurements": measurements})
        if measurements.is_empty() and len(items) == 1 and not items[0].measurements.is_empty():
            measurements = items[0].measurements

        total = self._total(raw, order_id, items)

        created_at = self._timestamp(raw, "created_at", order_id)
        updated_at = self._timestamp(raw, "updated_at", order_id)
        completed_at = self._timestamp(raw, "completed_at", order_id)
        if stage == Stage.COMPLETED:
            order_date = format_date(completed_at or created_at)
        else:
            order_date = format_date(created_at)

        checked_column = CHECKED_COLUMNS.get(stage)
        checked = bool(raw.get(checked_column)) if checked_column else False

        return Order(
            id=order_id or "",
            stage=stage,
            customer=customer,
            items=items,
            total_price=total,
            measurements=measurements,
            comments=comments,
            delivery_option=_text(raw.get("delivery_option")),
            delivery_location=_text(raw.get("delivery_location")),
            payment_option=_text(raw.get("payment_option")),
            payment_reference=_text(raw.get("payment_reference")),
            created_at=created_at,
            updated_at=updated_at,
            completed_at=completed_at,
            order_date=order_date,
            checked=checked,
        )

    def _stage(self, raw: Mapping[str, Any], order_id: Optional[str]) -> Stage:
        stage = parse_stage(raw.get("status"))
        if stage is None:
            self.diagnostics.malformed_field(order_id, "status", f"unknown status {raw.get('status')!r}, treated as pending")
            return Stage.PENDING
        return stage

    def _customer(self, raw: Mapping[str, Any], order_id: Optional[str]) -> Customer:
        self.diagnostics.check_customer_reference(raw, order_id)
        joined = raw.get("customers")
        if isinstance(joined, list):
            joined = joined[0] if joined else None
        if isinstance(joined, Mapping):
            return Customer(
                name=_text(joined.get("name")) or UNKNOWN_CUSTOMER,
                phone=_text(joined.get("phone")),
            )
        if has_customer_reference(raw):
            # Linked but not loaded; never fall back to the flat columns
            return Customer(name=UNKNOWN_CUSTOMER, phone="")
        return Customer(
            name=_text(raw.get("customer_name")) or UNKNOWN_CUSTOMER,
            phone=_text(raw.get("customer_phone")) or _text(raw.get("phone")),
        )

    def _items(self, raw: Mapping[str, Any], order_id: Optional[str]) -> Tuple[List[OrderItem], bool]:
        stored = raw.get("items")
        entries = None
        if stored not in (None, ""):
            try:
                entries = _load_json(stored)
            except (TypeError, ValueError) as e:
                self.diagnostics.malformed_field(order_id, "items", f"unparsable JSON: {e}")
                entries = None
            if entries is not None and not isinstance(entries, list):
                self.diagnostics.malformed_field(order_id, "items", f"expected a list, got {type(entries).__name__}")
                entries = None

        if entries:
            items = [self._item(entry, order_id, index) for index, entry in enumerate(entries)]
            return items, True

        return [self._flat_item(raw, order_id)], False

    def _item(self, entry: Any, order_id: Optional[str], index: int) -> OrderItem:
        if not isinstance(entry, Mapping):
            self.diagnostics.malformed_field(order_id, f"items[{index}]", f"expected an object, got {type(entry).__name__}")
            return OrderItem(product_image=self.placeholder_image)
        values = {name: _first(entry, keys) for name, keys in _ITEM_KEYS.items()}
        price = parse_price(values["price"])
        if values["price"] is not None and price is None:
            self.diagnostics.malformed_field(order_id, f"items[{index}].price", f"unparsable price {values['price']!r}")
        return OrderItem(
            product_name=_text(values["product_name"]) or UNKNOWN_PRODUCT,
            product_image=_text(values["product_image"]) or self.placeholder_image,
            color=_text(values["color"]),
            unit_price=price or 0.0,
            measurements=self._structured_measurements(values["measurements"], order_id, f"items[{index}].measurements")
            or Measurements(),
        )

    def _flat_item(self, raw: Mapping[str, Any], order_id: Optional[str]) -> OrderItem:
        product = raw.get("products")
        if isinstance(product, list):
            product = product[0] if product else None
        if not isinstance(product, Mapping):
            product = {}
        price = parse_price(raw.get("price"))
        if raw.get("price") not in (None, "") and price is None:
            self.diagnostics.malformed_field(order_id, "price", f"unparsable price {raw.get('price')!r}")
        return OrderItem(
            product_name=_text(product.get("name")) or _text(raw.get("product_name")) or UNKNOWN_PRODUCT,
            product_image=(
                _text(raw.get("product_image"))
                or _text(product.get("image_url"))
                or _text(raw.get("image_url"))
                or self.placeholder_image
            ),
            color=_text(raw.get("color")),
            unit_price=price or 0.0,
        )

    def _structured_measurements(self, value: Any, order_id: Optional[str], field_name: str) -> Optional[Measurements]:
        """Measurements from a dict or JSON string; None when absent or empty"""
        if value in (None, ""):
            return None
        try:
            data = _load_json(value)
        except (TypeError, ValueError) as e:
            self.diagnostics.malformed_field(order_id, field_name, f"unparsable JSON: {e}")
            return None
        if data is None:
            return None
        if not isinstance(data, Mapping):
            self.diagnostics.malformed_field(order_id, field_name, f"expected an object, got {type(data).__name__}")
            return None
        measurements = Measurements.from_mapping(data)
        if measurements.is_empty():
            return None
        return measurements

    def _measurements(self, raw: Mapping[str, Any], order_id: Optional[str]) -> Tuple[Measurements, str]:
        comments = _text(raw.get("comments")) or _text(raw.get("notes"))
        structured = self._structured_measurements(raw.get("measurements"), order_id, "measurements")
        if structured is not None:
            return structured, comments

        result = self.extractor.extract(comments)
        if result is None:
            return Measurements(), comments
        return result.measurements, result.residual

    def _total(self, raw: Mapping[str, Any], order_id: Optional[str], items: List[OrderItem]) -> float:
        item_prices = [item.unit_price for item in items]
        for column in ("total_price", "price"):
            value = raw.get(column)
            if value in (None, ""):
                continue
            total = parse_price(value)
            if total is None:
                self.diagnostics.malformed_field(order_id, column, f"unparsable amount {value!r}")
                continue
            if len(items) > 1 or column == "total_price":
                self.diagnostics.check_price_divergence(order_id, total, item_prices)
            return total
        return float(sum(item_prices))

    def _timestamp(self, raw: Mapping[str, Any], column: str, order_id: Optional[str]) -> Optional[datetime]:
        value = raw.get(column)
        parsed = parse_timestamp(value)
        if parsed is None and value not in (None, ""):
            self.diagnostics.malformed_field(order_id, column, f"unparsable timestamp {value!r}")
        return parsed

    def _fallback(self, raw: Any, order_id: Optional[str]) -> Order:
        stage = Stage.PENDING
        if isinstance(raw, Mapping):
            stage = parse_stage(raw.get("status")) or Stage.PENDING
        return Order(
            id=order_id or "",
            stage=stage,
            customer=Customer(),
            items=[OrderItem(product_image=self.placeholder_image)],
            total_price=0.0,
        )
