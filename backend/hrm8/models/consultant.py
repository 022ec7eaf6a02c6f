from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class Consultant(Base):
    """
    Anyone who can own an attribution and earn commission: recruiters, sales
    agents and 360 consultants.
    """

    __tablename__ = "consultants"
    __table_args__ = (
        CheckConstraint("commission_rate_bps >= 0 AND commission_rate_bps <= 10000", name="commission_rate_range"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, unique=True, index=True
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)

    # RECRUITER | SALES_AGENT | CONSULTANT_360
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="SALES_AGENT")

    region_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("regions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    licensee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("licensees.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Current rate. Commission entries snapshot it at creation time.
    commission_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)

    # Payout provider (Stripe Connect) account
    payout_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
