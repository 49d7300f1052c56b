"""
Diagnostic log model for persisted reconciliation findings
"""

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from atelier.database import Base


class DiagnosticLog(Base):
    """One reconciliation diagnostic raised while normalizing an order"""
    __tablename__ = "diagnostic_logs"

    id = Column(Integer, primary_key=True, index=True)
    severity = Column(String(10), nullable=False)
    order_id = Column(String(36), nullable=True, index=True)
    check_name = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<DiagnosticLog(id={self.id}, check='{self.check_name}', order_id='{self.order_id}')>"
