"""
Pydantic schemas for the dashboard endpoints
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime


class DiagnosticResponse(BaseModel):
    """Schema for a persisted reconciliation diagnostic"""
    id: int
    severity: str
    order_id: Optional[str] = None
    check_name: str
    description: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DiagnosticListResponse(BaseModel):
    diagnostics: List[DiagnosticResponse]
    count: int


class FeedStatus(BaseModel):
    """Change feed health as seen by the dashboard"""
    running: bool
    degraded: bool
    degraded_for_seconds: float = Field(0.0, ge=0)
    stale: bool
    reconnects: int = 0


class PipelineStatsResponse(BaseModel):
    """Live order counts per stage"""
    counts: Dict[str, int]
    total: int
    feed: FeedStatus
