from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, validates

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class ConversionRequest(Base):
    __tablename__ = "conversion_requests"
    __table_args__ = (
        # At most one PENDING request per lead.
        Index(
            "uq_conversion_requests_pending_lead",
            "lead_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_conversion_requests_lead_created_at", "lead_id", "created_at"),
        Index("ix_conversion_requests_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("consultants.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Snapshot of what the agent asked to convert
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    company_name: Mapped[str] = mapped_column(String(200), nullable=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    agent_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # bcrypt hash of the one-time password; written once at approval, never serialized
    temp_password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # PENDING | APPROVED | DECLINED | CONVERTED | CANCELLED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")

    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @validates("temp_password_hash")
    def _write_once(self, key: str, value: Optional[str]) -> Optional[str]:
        if self.temp_password_hash is not None:
            raise ValueError("temp_password_hash is write-once")
        return value
