# backend/hrm8/schemas/settlements.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SettlementGenerate(BaseModel):
    licensee_id: UUID
    period_start: datetime
    period_end: datetime
    region_id: Optional[UUID] = None


class SettlementMarkPaid(BaseModel):
    payment_reference: Optional[str] = None
    payment_date: Optional[datetime] = None
    expected_version: Optional[int] = None


class SettlementOut(BaseModel):
    id: UUID
    licensee_id: UUID
    region_id: Optional[UUID] = None
    period_start: datetime
    period_end: datetime
    total_revenue: int
    licensee_share: int
    hrm8_share: int
    revenue_share_bps: int
    event_count: int
    currency: str
    status: str
    payment_date: Optional[datetime] = None
    payment_reference: Optional[str] = None
    generated_at: datetime
    version: int

    model_config = ConfigDict(from_attributes=True)


class GeneratedSettlementOut(BaseModel):
    settlement: SettlementOut
    replaced: bool


class SettlementPageOut(BaseModel):
    items: List[SettlementOut]
    total: int
    limit: int
    offset: int


class SettlementStatsOut(BaseModel):
    total_pending: int
    total_paid: int
    pending_count: int
    paid_count: int
    current_period_revenue: int
    currency: str
