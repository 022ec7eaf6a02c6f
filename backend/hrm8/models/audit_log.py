# backend/hrm8/models/audit_log.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from hrm8.core.ledger import utcnow
from hrm8.db.base import Base
from hrm8.db.types import UTCDateTime


class AuditLogEntry(Base):
    """
    Append-only. Rows are hash-chained per entity: entry_hash covers the entry's
    canonical JSON plus prev_hash, so editing or deleting any row breaks every
    later hash for that entity.
    """

    __tablename__ = "audit_log_entries"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_log_entity_sequence"),
        Index("ix_audit_log_performed_at", "performed_at"),
        Index("ix_audit_log_action", "action"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)

    performed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    performed_by_role: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    prev_hash: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(80), nullable=False)

    performed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
