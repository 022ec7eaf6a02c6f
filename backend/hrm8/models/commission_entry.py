# backend/hrm8/models/commission_entry.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class CommissionEntry(Base):
    """
    One earned amount for one consultant, keyed by the revenue event that produced it.

    amount and rate_bps are computed once at creation; a later change of the
    consultant's rate never touches existing entries. PAID entries are immutable.
    """

    __tablename__ = "commission_entries"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="amount_non_negative"),
        Index("ix_commission_entries_consultant_status", "consultant_id", "status"),
        Index("ix_commission_entries_company", "company_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    consultant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("consultants.id", ondelete="RESTRICT"), nullable=False
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False
    )
    region_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)

    # Idempotency key: one entry per revenue event, ever.
    source_event_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)

    # PLACEMENT | SUBSCRIPTION | SERVICE_FEE
    commission_type: Mapped[str] = mapped_column(String(20), nullable=False)

    base_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # PENDING | CONFIRMED | PAID
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="PENDING")

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
