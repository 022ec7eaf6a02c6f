# backend/hrm8/schemas/regions.py
from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class RegionOut(BaseModel):
    id: UUID
    name: str
    country: Optional[str] = None
    licensee_id: Optional[UUID] = None
    version: int

    model_config = ConfigDict(from_attributes=True)


class TransferImpactOut(BaseModel):
    region_id: UUID
    current_licensee_id: Optional[UUID] = None
    companies: int
    jobs: int
    open_jobs: int
    consultants: int
    open_invoices: int
    opportunities: int


class RegionTransfer(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_licensee_id: UUID
    audit_note: Optional[str] = None
    expected_version: Optional[int] = None


class RegionTransferOut(BaseModel):
    region: RegionOut
    previous_licensee_id: Optional[UUID] = None
    target_licensee_id: UUID
    impact: TransferImpactOut


class RegionListOut(BaseModel):
    items: List[RegionOut]
