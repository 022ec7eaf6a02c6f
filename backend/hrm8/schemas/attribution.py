# backend/hrm8/schemas/attribution.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AttributionOut(BaseModel):
    company_id: UUID
    company_name: str
    region_id: Optional[UUID] = None
    licensee_id: Optional[UUID] = None
    attribution_owner_id: Optional[UUID] = None
    attribution_status: str
    attribution_locked_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    attribution_expired_at: Optional[datetime] = None
    version: int


class AttributionLock(BaseModel):
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class AttributionReassign(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_owner_id: UUID
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class ExpiryRunOut(BaseModel):
    expired: List[UUID]
    deferred: List[UUID]
