# backend/hrm8/models/withdrawal.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class Withdrawal(Base):
    __tablename__ = "withdrawals"
    __table_args__ = (
        Index("ix_withdrawals_consultant_status", "consultant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    consultant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("consultants.id", ondelete="RESTRICT"), nullable=False
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Requested ids as submitted (string uuids); the live claims are in withdrawal_claims.
    commission_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # PENDING | APPROVED | PROCESSING | COMPLETED | REJECTED | CANCELLED
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="PENDING")

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Same key on every payout attempt for this withdrawal.
    idempotency_key: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    payout_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)


class WithdrawalClaim(Base):
    """
    One row per commission entry held by a live withdrawal.

    The unique constraint on commission_entry_id is what makes double-claiming
    impossible: two concurrent requests naming the same entry cannot both commit.
    Rows are removed when their withdrawal is REJECTED or CANCELLED.
    """

    __tablename__ = "withdrawal_claims"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    commission_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("commission_entries.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    withdrawal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("withdrawals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
