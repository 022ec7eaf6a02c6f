# backend/hrm8/services/revenue.py
"""
Revenue event intake.

Billing (subscriptions, placement fees, service fees) reports each charge once
per source_event_id; replays return what was recorded the first time. The
event snapshots the company's region, licensee and attribution owner so later
transfers and reassignments never move revenue that was already earned.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from hrm8.auth.permissions import Actor
from hrm8.core.config import settings
from hrm8.core.errors import ConflictError, ValidationFailedError
from hrm8.core.ledger import ensure_aware, require_minor_units, utcnow
from hrm8.core.states import AttributionStatus, CommissionType, parse_status
from hrm8.models.commission_entry import CommissionEntry
from hrm8.models.company import Company
from hrm8.models.revenue_event import RevenueEvent
from hrm8.services import audit
from hrm8.services.attribution import apply_lock
from hrm8.services.audit import AuditAction, AuditEntity
from hrm8.services.commissions import add_commission
from hrm8.services.common import get_for_update, transactional

logger = logging.getLogger(__name__)

# Event types that lock an OPEN attribution the first time they are seen.
LOCKING_EVENT_TYPES = frozenset({CommissionType.SUBSCRIPTION})


@dataclass
class RecordedRevenue:
    event: RevenueEvent
    commission: Optional[CommissionEntry]
    created: bool
    locked_attribution: bool = False


async def _existing(db: AsyncSession, source_event_id: str) -> Optional[RecordedRevenue]:
    event = (
        await db.execute(select(RevenueEvent).where(RevenueEvent.source_event_id == source_event_id))
    ).scalar_one_or_none()
    if event is None:
        return None
    commission = (
        await db.execute(select(CommissionEntry).where(CommissionEntry.source_event_id == source_event_id))
    ).scalar_one_or_none()
    return RecordedRevenue(event=event, commission=commission, created=False)


@transactional
async def record_revenue_event(
    db: AsyncSession,
    *,
    actor: Actor,
    source_event_id: str,
    company_id: uuid.UUID,
    event_type: str,
    value: int,
    currency: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> RecordedRevenue:
    source_event_id = (source_event_id or "").strip()
    if not source_event_id:
        raise ValidationFailedError("source_event_id is required", details={"field": "source_event_id"})
    etype = parse_status(CommissionType, event_type, field="event_type")
    require_minor_units(value, field="value")

    replay = await _existing(db, source_event_id)
    if replay is not None:
        if replay.event.company_id != company_id or replay.event.value != value:
            logger.warning("revenue event %s replayed with a different payload; keeping original", source_event_id)
        return replay

    company = await get_for_update(db, Company, company_id, label="Company")
    status = AttributionStatus(company.attribution_status)
    # an EXPIRED attribution earns nobody commission until it is reassigned
    owner_id = company.attribution_owner_id if status != AttributionStatus.EXPIRED else None

    event = RevenueEvent(
        source_event_id=source_event_id,
        company_id=company.id,
        event_type=etype.value,
        value=value,
        currency=(currency or settings.DEFAULT_CURRENCY).upper(),
        region_id=company.region_id,
        licensee_id=company.licensee_id,
        consultant_id=owner_id,
        occurred_at=ensure_aware(occurred_at or utcnow()),
        event_metadata=metadata or {},
    )
    db.add(event)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        replay = await _existing(db, source_event_id)
        if replay is None:
            raise
        return replay

    locked = False
    if etype in LOCKING_EVENT_TYPES and status == AttributionStatus.OPEN and owner_id is not None:
        await apply_lock(db, company, actor=actor, reason=f"First {etype.value} revenue ({source_event_id})")
        locked = True

    commission = None
    if owner_id is not None:
        commission, _ = await add_commission(
            db,
            actor=actor,
            consultant_id=owner_id,
            company_id=company.id,
            source_event_id=source_event_id,
            commission_type=etype,
            base_value=value,
            region_id=company.region_id,
            currency=event.currency,
        )

    await audit.append(
        db,
        entity_type=AuditEntity.REVENUE_EVENT,
        entity_id=event.id,
        action=AuditAction.RECORD,
        actor=actor,
        changes={
            "source_event_id": source_event_id,
            "company_id": company.id,
            "event_type": event.event_type,
            "value": value,
            "licensee_id": event.licensee_id,
            "consultant_id": owner_id,
        },
    )

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        replay = await _existing(db, source_event_id)
        if replay is None:
            raise
        return replay
    except StaleDataError as exc:
        await db.rollback()
        raise ConflictError("Company attribution changed concurrently; retry") from exc

    logger.info(
        "revenue event %s recorded for company %s (%s %s)%s",
        source_event_id,
        company.id,
        value,
        event.currency,
        " and attribution locked" if locked else "",
    )
    return RecordedRevenue(event=event, commission=commission, created=True, locked_attribution=locked)
