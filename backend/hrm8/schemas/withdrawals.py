# backend/hrm8/schemas/withdrawals.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class WithdrawalCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    commission_ids: List[UUID] = Field(min_length=1)
    notes: Optional[str] = None
    # Admins may file on a consultant's behalf; consultants always file for themselves
    consultant_id: Optional[UUID] = None


class WithdrawalApprove(BaseModel):
    admin_notes: Optional[str] = None


class WithdrawalReject(BaseModel):
    reason: str
    admin_notes: Optional[str] = None


class WithdrawalProcess(BaseModel):
    payment_reference: str = Field(min_length=1, max_length=120)


class WithdrawalOut(BaseModel):
    id: UUID
    consultant_id: UUID
    amount: int
    currency: str
    commission_ids: List[str]
    status: str
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    payout_attempts: int
    created_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WithdrawalPageOut(BaseModel):
    items: List[WithdrawalOut]
    total: int
    limit: int
    offset: int


class WithdrawalBalanceOut(BaseModel):
    consultant_id: UUID
    available_balance: int
    pending_balance: int
    total_earned: int
    total_withdrawn: int
    available_commission_ids: List[UUID]
    currency: str


class PayoutStatusOut(BaseModel):
    payouts_enabled: bool
    onboarding_url: Optional[str] = None
