# backend/hrm8/models/settlement.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class Settlement(Base):
    """
    Regional revenue owed to a licensee for one closed-open period.
    """

    __tablename__ = "settlements"
    __table_args__ = (
        CheckConstraint("hrm8_share + licensee_share = total_revenue", name="shares_sum_to_total"),
        CheckConstraint("period_start < period_end", name="period_order"),
        Index("ix_settlements_licensee_period", "licensee_id", "period_start", "period_end"),
        Index("ix_settlements_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    licensee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("licensees.id", ondelete="RESTRICT"), nullable=False
    )
    # Set when the settlement was generated for a single region of the licensee.
    region_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("regions.id", ondelete="SET NULL"), nullable=True
    )

    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    total_revenue: Mapped[int] = mapped_column(BigInteger, nullable=False)
    licensee_share: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hrm8_share: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # share snapshot used for this computation
    revenue_share_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # PENDING | PAID
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="PENDING")
    payment_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    generated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    generated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
