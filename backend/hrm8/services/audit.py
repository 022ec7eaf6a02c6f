# backend/hrm8/services/audit.py
"""
Append-only audit trail.

append() runs inside the caller's transaction, so an entry commits together with
the state change it describes or not at all. Entries are hash-chained per entity
(see AuditLogEntry); verify_chain() recomputes the chain and reports the first
broken link.
"""
from __future__ import annotations

import enum
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.auth.permissions import Actor
from hrm8.core.ledger import ensure_aware, utcnow
from hrm8.models.audit_log import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditEntity(str, enum.Enum):
    LEAD = "LEAD"
    CONVERSION_REQUEST = "CONVERSION_REQUEST"
    COMPANY = "COMPANY"
    REVENUE_EVENT = "REVENUE_EVENT"
    COMMISSION = "COMMISSION"
    WITHDRAWAL = "WITHDRAWAL"
    SETTLEMENT = "SETTLEMENT"
    REGION = "REGION"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    QUALIFY = "QUALIFY"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    DECLINE = "DECLINE"
    CANCEL = "CANCEL"
    LOCK = "LOCK"
    EXPIRE = "EXPIRE"
    REASSIGN = "REASSIGN"
    RECORD = "RECORD"
    CONFIRM = "CONFIRM"
    PAY = "PAY"
    REQUEST = "REQUEST"
    REJECT = "REJECT"
    PROCESS = "PROCESS"
    GENERATE = "GENERATE"
    REGENERATE = "REGENERATE"
    TRANSFER = "TRANSFER"


def compute_entry_hash(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    performed_by: Optional[str],
    performed_by_role: str,
    description: Optional[str],
    changes: dict[str, Any],
    sequence: int,
    prev_hash: Optional[str],
    performed_at: datetime,
) -> str:
    canonical = json.dumps(
        {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "performed_by": performed_by,
            "performed_by_role": performed_by_role,
            "description": description,
            "changes": changes,
            "sequence": sequence,
            "prev_hash": prev_hash,
            "performed_at": ensure_aware(performed_at).isoformat(),
        },
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


async def append(
    db: AsyncSession,
    *,
    entity_type: AuditEntity,
    entity_id: object,
    action: AuditAction,
    actor: Actor,
    description: Optional[str] = None,
    changes: Optional[dict[str, Any]] = None,
) -> AuditLogEntry:
    entity_key = str(entity_id)
    last = (
        await db.execute(
            select(AuditLogEntry)
            .where(
                AuditLogEntry.entity_type == entity_type.value,
                AuditLogEntry.entity_id == entity_key,
            )
            .order_by(AuditLogEntry.sequence.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    sequence = (last.sequence + 1) if last else 1
    prev_hash = last.entry_hash if last else None
    performed_at = utcnow()
    payload = json.loads(json.dumps(changes or {}, default=str))

    entry = AuditLogEntry(
        entity_type=entity_type.value,
        entity_id=entity_key,
        action=action.value,
        performed_by=actor.audit_id,
        performed_by_role=actor.role,
        description=description,
        changes=payload,
        ip_address=actor.ip_address,
        sequence=sequence,
        prev_hash=prev_hash,
        performed_at=performed_at,
        entry_hash=compute_entry_hash(
            entity_type=entity_type.value,
            entity_id=entity_key,
            action=action.value,
            performed_by=actor.audit_id,
            performed_by_role=actor.role,
            description=description,
            changes=payload,
            sequence=sequence,
            prev_hash=prev_hash,
            performed_at=performed_at,
        ),
    )
    db.add(entry)
    # flush so a second append for the same entity in this transaction sees this row
    await db.flush()
    return entry


async def query(
    db: AsyncSession,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[Sequence[AuditLogEntry], int]:
    conditions = []
    if entity_type:
        conditions.append(AuditLogEntry.entity_type == entity_type.strip().upper())
    if entity_id:
        conditions.append(AuditLogEntry.entity_id == str(entity_id))
    if action:
        conditions.append(AuditLogEntry.action == action.strip().upper())

    total = await db.scalar(select(func.count()).select_from(AuditLogEntry).where(*conditions))
    rows = (
        await db.execute(
            select(AuditLogEntry)
            .where(*conditions)
            .order_by(AuditLogEntry.performed_at.desc(), AuditLogEntry.sequence.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return rows, int(total or 0)


@dataclass(frozen=True)
class AuditStats:
    total_logs: int
    today_logs: int
    top_actions: list[tuple[str, int]]


async def stats(db: AsyncSession, *, now: Optional[datetime] = None, top: int = 5) -> AuditStats:
    now = now or utcnow()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

    total = await db.scalar(select(func.count()).select_from(AuditLogEntry))
    today = await db.scalar(
        select(func.count())
        .select_from(AuditLogEntry)
        .where(
            AuditLogEntry.performed_at >= start_of_day,
            AuditLogEntry.performed_at < start_of_day + timedelta(days=1),
        )
    )
    rows = (
        await db.execute(
            select(AuditLogEntry.action, func.count(AuditLogEntry.id).label("n"))
            .group_by(AuditLogEntry.action)
            .order_by(func.count(AuditLogEntry.id).desc(), AuditLogEntry.action)
            .limit(top)
        )
    ).all()
    return AuditStats(
        total_logs=int(total or 0),
        today_logs=int(today or 0),
        top_actions=[(action, int(n)) for action, n in rows],
    )


@dataclass(frozen=True)
class ChainVerification:
    entity_type: str
    entity_id: str
    entries: int
    valid: bool
    broken_at_sequence: Optional[int] = None


async def verify_chain(db: AsyncSession, *, entity_type: str, entity_id: str) -> ChainVerification:
    entity_type = entity_type.strip().upper()
    rows = (
        await db.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.entity_type == entity_type, AuditLogEntry.entity_id == str(entity_id))
            .order_by(AuditLogEntry.sequence.asc())
        )
    ).scalars().all()

    prev_hash: Optional[str] = None
    for expected_seq, row in enumerate(rows, start=1):
        recomputed = compute_entry_hash(
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            action=row.action,
            performed_by=row.performed_by,
            performed_by_role=row.performed_by_role,
            description=row.description,
            changes=row.changes or {},
            sequence=row.sequence,
            prev_hash=row.prev_hash,
            performed_at=row.performed_at,
        )
        if row.sequence != expected_seq or row.prev_hash != prev_hash or row.entry_hash != recomputed:
            logger.warning(
                "audit chain broken for %s/%s at sequence %s", entity_type, entity_id, row.sequence
            )
            return ChainVerification(
                entity_type=entity_type,
                entity_id=str(entity_id),
                entries=len(rows),
                valid=False,
                broken_at_sequence=row.sequence,
            )
        prev_hash = row.entry_hash

    return ChainVerification(entity_type=entity_type, entity_id=str(entity_id), entries=len(rows), valid=True)
