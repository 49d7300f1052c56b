"""
Order model for database operations

The table carries both the legacy single-item columns and the newer
`items` JSON array; rows written by older intake forms only fill the former.
"""

import uuid

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, String, Text
from sqlalchemy.sql import func

from atelier.database import Base

ORDER_STATUSES = ("pending", "in_progress", "to_deliver", "completed", "cancelled")
PAYMENT_OPTIONS = ("mpesa", "stk-push", "card", "paypal", "apple-pay", "paystack")


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class OrderRecord(Base):
    """Stored order row"""
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(_in_list("status", ORDER_STATUSES), name="orders_status_check"),
        CheckConstraint(
            f"payment_option IS NULL OR {_in_list('payment_option', PAYMENT_OPTIONS)}",
            name="orders_payment_option_check",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = Column(String(20), default="pending", nullable=False, index=True)

    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    # Legacy denormalized customer fields
    customer_name = Column(String(150), nullable=True)
    customer_phone = Column(String(30), nullable=True)
    phone = Column(String(30), nullable=True)

    # Legacy single-item fields
    product_name = Column(String(200), nullable=True)
    product_image = Column(String(500), nullable=True)
    color = Column(String(50), nullable=True)
    price = Column(Float, nullable=True)

    items = Column(JSON, nullable=True)
    total_price = Column(Float, nullable=True)
    measurements = Column(JSON, nullable=True)
    comments = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    delivery_option = Column(String(50), nullable=True)
    delivery_location = Column(String(255), nullable=True)
    payment_option = Column(String(30), nullable=True)
    payment_reference = Column(String(100), nullable=True)

    production_checked = Column(Boolean, default=False, nullable=True)
    logistics_checked = Column(Boolean, default=False, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    original_status = Column(String(20), nullable=True)

    def __repr__(self):
        return f"<OrderRecord(id='{self.id}', status='{self.status}')>"
