"""
Pydantic schemas for the canonical order and the order endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import Any, Dict, List, Literal, Mapping, Optional
from datetime import datetime

from atelier.schemas.stage import Stage

UNKNOWN_CUSTOMER = "Unknown Customer"
UNKNOWN_PRODUCT = "Unknown Product"
PLACEHOLDER_IMAGE = "https://via.placeholder.com/400"

STANDARD_FIELDS = ("size", "bust", "waist", "hips", "length")
IN_HOUSE_FIELDS = ("height", "bust", "high_waist", "hips")

# Stored key spellings seen across intake form versions
_MEASUREMENT_ALIASES = {
    "size": "size",
    "bust": "bust",
    "waist": "waist",
    "hips": "hips",
    "hip": "hips",
    "length": "length",
    "height": "height",
    "high_waist": "high_waist",
    "highwaist": "high_waist",
    "high waist": "high_waist",
}

# Columns the pipeline owns; callers may not set them through extra fields
RESERVED_COLUMNS = frozenset(["id", "status", "created_at", "updated_at", "completed_at", "deleted_at"])


class Customer(BaseModel):
    """Resolved customer"""
    name: str = UNKNOWN_CUSTOMER
    phone: str = ""


class Measurements(BaseModel):
    """Body measurements, standard (size/waist) or in-house (height/high waist)"""
    variant: Literal["standard", "in_house"] = "standard"
    size: str = ""
    bust: str = ""
    waist: str = ""
    hips: str = ""
    length: str = ""
    height: str = ""
    high_waist: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Measurements":
        values: Dict[str, str] = {}
        for key, value in data.items():
            if not isinstance(key, str):
                continue
            field = _MEASUREMENT_ALIASES.get(key.strip().lower())
            if field is None:
                # camelCase: highWaist
                field = _MEASUREMENT_ALIASES.get(
                    "".join("_" + c.lower() if c.isupper() else c for c in key.strip()).lstrip("_")
                )
            if field is None or value is None:
                continue
            values[field] = str(value).strip()
        variant = "in_house" if values.get("height") or values.get("high_waist") else "standard"
        return cls(variant=variant, **values)

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in STANDARD_FIELDS + IN_HOUSE_FIELDS)

    def as_fields(self) -> Dict[str, str]:
        """Only the fields of this variant"""
        names = IN_HOUSE_FIELDS if self.variant == "in_house" else STANDARD_FIELDS
        return {name: getattr(self, name) for name in names}


class OrderItem(BaseModel):
    """One garment within an order"""
    product_name: str = UNKNOWN_PRODUCT
    product_image: str = PLACEHOLDER_IMAGE
    color: str = ""
    unit_price: float = 0.0
    measurements: Measurements = Field(default_factory=Measurements)


class Order(BaseModel):
    """Canonical in-memory order, whatever shape it was stored in"""
    id: str
    stage: Stage
    customer: Customer = Field(default_factory=Customer)
    items: List[OrderItem] = Field(..., min_length=1)
    total_price: float = 0.0
    measurements: Measurements = Field(default_factory=Measurements)
    comments: str = ""
    delivery_option: str = ""
    delivery_location: str = ""
    payment_option: str = ""
    payment_reference: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    order_date: str = ""
    checked: bool = False

    @property
    def items_total(self) -> float:
        """Sum of item prices; may differ from the stored total"""
        return sum(item.unit_price for item in self.items)


class TransitionRequest(BaseModel):
    """Schema for requesting a stage move"""
    from_stage: Stage = Field(..., description="Stage the caller believes the order is at")
    to_stage: Stage = Field(..., description="Target stage")
    extra_fields: Optional[Dict[str, Any]] = Field(None, description="Additional columns written with the move")


class TransitionResponse(BaseModel):
    """Outcome of a successful stage move"""
    changed: bool
    order: Order


class StageOrdersResponse(BaseModel):
    """Snapshot of one stage view"""
    stage: Stage
    state: str
    stale: bool
    count: int
    orders: List[Order]


class StageSummary(BaseModel):
    stage: Stage
    label: str
    count: int


class CheckedUpdate(BaseModel):
    """Schema for toggling the operator readiness flag"""
    checked: bool


class MeasurementsUpdate(BaseModel):
    """Schema for correcting measurements"""
    measurements: Dict[str, str] = Field(..., description="Measurement values keyed by name")
    item_index: Optional[int] = Field(None, ge=0, description="Item to correct in a multi-item order")

    @validator('measurements')
    def validate_measurements(cls, v):
        if not v:
            raise ValueError('At least one measurement is required')
        return v


class ItemsUpdate(BaseModel):
    """Schema for replacing the items of an order"""
    items: List[OrderItem] = Field(..., min_length=1)
    total_price: Optional[float] = Field(None, ge=0)
