# backend/hrm8/schemas/revenue.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from hrm8.schemas.commissions import CommissionOut


class RevenueEventCreate(BaseModel):
    source_event_id: str = Field(min_length=1, max_length=120)
    company_id: UUID
    event_type: str = Field(description="PLACEMENT | SUBSCRIPTION | SERVICE_FEE")
    # minor units
    value: int = Field(ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    occurred_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RevenueEventOut(BaseModel):
    id: UUID
    source_event_id: str
    company_id: UUID
    event_type: str
    value: int
    currency: str
    region_id: Optional[UUID] = None
    licensee_id: Optional[UUID] = None
    consultant_id: Optional[UUID] = None
    occurred_at: datetime
    created_at: datetime

    event_metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class RecordedRevenueOut(BaseModel):
    event: RevenueEventOut
    commission: Optional[CommissionOut] = None
    created: bool
    locked_attribution: bool
