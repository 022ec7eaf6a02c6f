from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class Company(Base):
    """
    Paying account. Only ever created by an approved conversion request.
    """

    __tablename__ = "companies"
    __table_args__ = (
        CheckConstraint(
            "attribution_status <> 'LOCKED' OR attribution_owner_id IS NOT NULL",
            name="locked_requires_owner",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # lower-cased name; collisions surface as a retryable conflict on approval
    name_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, unique=True
    )

    region_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("regions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    licensee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("licensees.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Attribution
    attribution_owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("consultants.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # OPEN | LOCKED | EXPIRED
    attribution_status: Mapped[str] = mapped_column(String(10), nullable=False, default="OPEN")
    attribution_locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    locked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    attribution_expired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @staticmethod
    def make_name_key(name: str) -> str:
        return " ".join(name.strip().split()).lower()
