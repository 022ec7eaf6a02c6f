# backend/hrm8/models/revenue_event.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import BigInteger, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class RevenueEvent(Base):
    """
    Immutable record of money a company paid (subscription, placement fee,
    service fee).

    region_id / licensee_id / consultant_id are snapshots taken when the event is
    recorded, so a later region transfer or re-attribution never moves revenue
    that was already earned.
    """

    __tablename__ = "revenue_events"
    __table_args__ = (
        Index("ix_revenue_events_licensee_occurred", "licensee_id", "occurred_at"),
        Index("ix_revenue_events_company_occurred", "company_id", "occurred_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # External idempotency key (billing provider charge id, placement id, ...)
    source_event_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)

    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )

    # PLACEMENT | SUBSCRIPTION | SERVICE_FEE
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)

    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    region_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    licensee_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    consultant_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    # NOTE: attribute name cannot be "metadata" in SQLAlchemy Declarative
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
