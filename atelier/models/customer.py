"""
Customer model referenced by orders
"""

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from atelier.database import Base


class CustomerRecord(Base):
    """Customer entity joined into orders as `customers`"""
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(150), nullable=False)
    phone = Column(String(30), nullable=True)
    email = Column(String(150), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<CustomerRecord(id='{self.id}', name='{self.name}')>"
