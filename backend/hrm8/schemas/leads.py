# backend/hrm8/schemas/leads.py
from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from hrm8.schemas.conversions import ConversionRequestOut


def _normalize_country(value: str) -> str:
    v = value.strip().upper()
    if not re.fullmatch(r"[A-Z]{2}", v):
        raise ValueError("Must be a 2-letter ISO country code (e.g., AU).")
    return v


class LeadCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    company_name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    country: str = Field(min_length=2, max_length=2)
    phone: Optional[str] = Field(default=None, max_length=32)
    website: Optional[str] = Field(default=None, max_length=255)
    budget: Optional[str] = Field(default=None, max_length=100)
    timeline: Optional[str] = Field(default=None, max_length=100)
    message: Optional[str] = None
    region_id: Optional[UUID] = None
    agent_id: Optional[UUID] = None

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return _normalize_country(v)


class LeadTransition(BaseModel):
    expected_version: Optional[int] = None
    reason: Optional[str] = None


class LeadOut(BaseModel):
    id: UUID
    company_name: str
    email: str
    phone: Optional[str] = None
    website: Optional[str] = None
    country: str
    budget: Optional[str] = None
    timeline: Optional[str] = None
    message: Optional[str] = None
    status: str
    region_id: Optional[UUID] = None
    agent_id: Optional[UUID] = None
    version: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeadDetailOut(LeadOut):
    # most recent request's status, None when nothing was submitted yet
    approval_state: Optional[str] = None
    conversion_requests: List[ConversionRequestOut] = []


class LeadListOut(BaseModel):
    items: List[LeadOut]
    total: int
    limit: int
    offset: int
