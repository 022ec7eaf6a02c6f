# backend/hrm8/schemas/commissions.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CommissionCreate(BaseModel):
    consultant_id: UUID
    company_id: UUID
    source_event_id: str = Field(min_length=1, max_length=120)
    type: str = Field(description="PLACEMENT | SUBSCRIPTION | SERVICE_FEE")
    base_value: int = Field(ge=0)


class CommissionOut(BaseModel):
    id: UUID
    consultant_id: UUID
    company_id: UUID
    region_id: Optional[UUID] = None
    source_event_id: str
    commission_type: str
    base_value: int
    rate_bps: int
    amount: int
    currency: str
    status: str
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CommissionPageOut(BaseModel):
    items: List[CommissionOut]
    total: int
    limit: int
    offset: int


class CommissionPay(BaseModel):
    payment_reference: str = Field(min_length=1, max_length=120)


class BulkCommissionPay(BaseModel):
    commission_ids: List[UUID] = Field(min_length=1)
    payment_reference: str = Field(min_length=1, max_length=120)


class BulkCommissionPayOut(BaseModel):
    processed: int
    total: int
    errors: List[Dict[str, Any]] = []
