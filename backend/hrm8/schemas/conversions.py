# backend/hrm8/schemas/conversions.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class ConversionSubmit(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent_notes: Optional[str] = None
    domain: Optional[str] = Field(default=None, max_length=255)
    # Defaults to the lead's own values
    email: Optional[EmailStr] = None
    company_name: Optional[str] = Field(default=None, max_length=200)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)


class ConversionApprove(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Generated when omitted
    temp_password: Optional[str] = Field(default=None, min_length=8, max_length=72)
    admin_notes: Optional[str] = None
    expected_version: Optional[int] = None


class ConversionDecline(BaseModel):
    model_config = ConfigDict(extra="forbid")

    decline_reason: str
    admin_notes: Optional[str] = None
    expected_version: Optional[int] = None


class ConversionCancel(BaseModel):
    expected_version: Optional[int] = None


class ConversionRequestOut(BaseModel):
    """Read shape; carries no password field of any kind."""

    id: UUID
    lead_id: UUID
    agent_id: Optional[UUID] = None
    email: str
    company_name: str
    country: str
    domain: Optional[str] = None
    agent_notes: Optional[str] = None
    status: str
    admin_notes: Optional[str] = None
    decline_reason: Optional[str] = None
    decided_by: Optional[UUID] = None
    decided_at: Optional[datetime] = None
    company_id: Optional[UUID] = None
    version: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversionRequestListOut(BaseModel):
    items: List[ConversionRequestOut]
    total: int
    limit: int
    offset: int


class CompanySummaryOut(BaseModel):
    id: UUID
    name: str
    domain: Optional[str] = None
    attribution_owner_id: Optional[UUID] = None
    attribution_status: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CredentialOut(BaseModel):
    email: str
    temp_password: str


class ApprovalOut(BaseModel):
    request: ConversionRequestOut
    company: CompanySummaryOut
    # shown once; never returned by any other endpoint
    credential: CredentialOut
    warnings: List[str] = []


class DeclineOut(BaseModel):
    request: ConversionRequestOut
    warnings: List[str] = []
