# backend/hrm8/services/attribution.py
"""
Company attribution: who earns commission on a company's revenue.

OPEN -> LOCKED happens on the first qualifying revenue event (or an explicit
admin lock) and freezes the owner until locked_until. LOCKED -> EXPIRED is
driven only by time, through expire_attributions(), and is deferred while the
company still has unsettled money in flight. After expiry the only way back is
an explicit reassignment.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.auth.permissions import SYSTEM_ACTOR, Actor
from hrm8.core.config import settings
from hrm8.core.errors import InvalidTransitionError, ValidationFailedError
from hrm8.core.ledger import ensure_aware, utcnow
from hrm8.core.states import (
    ATTRIBUTION_TRANSITIONS,
    AttributionStatus,
    CommissionStatus,
    SettlementStatus,
    ensure_transition,
)
from hrm8.models.commission_entry import CommissionEntry
from hrm8.models.company import Company
from hrm8.models.consultant import Consultant
from hrm8.models.revenue_event import RevenueEvent
from hrm8.models.settlement import Settlement
from hrm8.services import audit
from hrm8.services.audit import AuditAction, AuditEntity
from hrm8.services.common import (
    check_version,
    commit_or_conflict,
    ensure_licensee_scope,
    get_for_update,
    get_or_404,
    transactional,
)

logger = logging.getLogger(__name__)


@dataclass
class ExpiryRun:
    expired: list[uuid.UUID] = field(default_factory=list)
    deferred: list[uuid.UUID] = field(default_factory=list)


async def get_attribution(db: AsyncSession, company_id: uuid.UUID, *, actor: Actor) -> Company:
    company = await get_or_404(db, Company, company_id, label="Company")
    ensure_licensee_scope(actor, company.licensee_id)
    return company


async def apply_lock(
    db: AsyncSession,
    company: Company,
    *,
    actor: Actor,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> None:
    """
    OPEN -> LOCKED inside the caller's transaction. The caller must hold the
    company row lock.
    """
    ensure_transition(
        ATTRIBUTION_TRANSITIONS,
        AttributionStatus(company.attribution_status),
        AttributionStatus.LOCKED,
        entity="Company attribution",
        entity_id=company.id,
    )
    if company.attribution_owner_id is None:
        raise ValidationFailedError(
            "Attribution cannot be locked without an owner",
            details={"company_id": str(company.id)},
        )

    now = ensure_aware(now or utcnow())
    company.attribution_status = AttributionStatus.LOCKED.value
    company.attribution_locked_at = now
    company.locked_until = now + timedelta(days=settings.ATTRIBUTION_WINDOW_DAYS)

    await audit.append(
        db,
        entity_type=AuditEntity.COMPANY,
        entity_id=company.id,
        action=AuditAction.LOCK,
        actor=actor,
        description=reason,
        changes={
            "attribution_status": [AttributionStatus.OPEN.value, company.attribution_status],
            "attribution_owner_id": company.attribution_owner_id,
            "locked_until": company.locked_until.isoformat(),
        },
    )


@transactional
async def lock_attribution(
    db: AsyncSession,
    company_id: uuid.UUID,
    *,
    actor: Actor,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Company:
    company = await get_for_update(db, Company, company_id, label="Company")
    check_version(company, expected_version, label="Company")
    ensure_licensee_scope(actor, company.licensee_id)
    await apply_lock(db, company, actor=actor, now=now, reason=reason)
    await commit_or_conflict(db, "Company was modified concurrently; reload and retry")
    logger.info("attribution for company %s OPEN -> LOCKED until %s", company.id, company.locked_until)
    return company


async def _expiry_blocked(db: AsyncSession, company: Company) -> bool:
    """
    True while money for the company is still in flight: a commission not yet
    confirmed, or revenue inside a settlement period that is still PENDING.
    Confirmed and paid entries are already fixed to their consultant and never
    hold the lock.
    """
    unconfirmed_commission = await db.scalar(
        select(
            select(CommissionEntry.id)
            .where(
                CommissionEntry.company_id == company.id,
                CommissionEntry.status == CommissionStatus.PENDING.value,
            )
            .exists()
        )
    )
    if unconfirmed_commission:
        return True

    in_open_settlement = await db.scalar(
        select(
            select(RevenueEvent.id)
            .join(
                Settlement,
                and_(
                    Settlement.licensee_id == RevenueEvent.licensee_id,
                    Settlement.period_start <= RevenueEvent.occurred_at,
                    Settlement.period_end > RevenueEvent.occurred_at,
                ),
            )
            .where(
                RevenueEvent.company_id == company.id,
                Settlement.status == SettlementStatus.PENDING.value,
            )
            .exists()
        )
    )
    return bool(in_open_settlement)


async def expire_attributions(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    actor: Actor = SYSTEM_ACTOR,
) -> ExpiryRun:
    now = ensure_aware(now or utcnow())
    run = ExpiryRun()

    due = (
        await db.execute(
            select(Company)
            .where(
                Company.attribution_status == AttributionStatus.LOCKED.value,
                Company.locked_until < now,
            )
            .order_by(Company.locked_until.asc())
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()

    for company in due:
        if await _expiry_blocked(db, company):
            run.deferred.append(company.id)
            continue

        ensure_transition(
            ATTRIBUTION_TRANSITIONS,
            AttributionStatus.LOCKED,
            AttributionStatus.EXPIRED,
            entity="Company attribution",
            entity_id=company.id,
        )
        company.attribution_status = AttributionStatus.EXPIRED.value
        company.attribution_expired_at = now
        await audit.append(
            db,
            entity_type=AuditEntity.COMPANY,
            entity_id=company.id,
            action=AuditAction.EXPIRE,
            actor=actor,
            changes={
                "attribution_status": [AttributionStatus.LOCKED.value, company.attribution_status],
                "locked_until": company.locked_until.isoformat() if company.locked_until else None,
            },
        )
        run.expired.append(company.id)

    await commit_or_conflict(db, "Attribution expiry collided with a concurrent change")
    if run.expired or run.deferred:
        logger.info("attribution expiry: %d expired, %d deferred", len(run.expired), len(run.deferred))
    for company_id in run.deferred:
        logger.warning("attribution expiry for company %s deferred: unsettled revenue", company_id)
    return run


@transactional
async def reassign_attribution(
    db: AsyncSession,
    company_id: uuid.UUID,
    *,
    actor: Actor,
    new_owner_id: uuid.UUID,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Company:
    company = await get_for_update(db, Company, company_id, label="Company")
    check_version(company, expected_version, label="Company")
    ensure_licensee_scope(actor, company.licensee_id)

    current = AttributionStatus(company.attribution_status)
    if current == AttributionStatus.LOCKED:
        raise InvalidTransitionError(
            "Attribution is locked; it can be reassigned once it is OPEN or EXPIRED",
            details={
                "entity": "Company attribution",
                "entity_id": str(company.id),
                "from": current.value,
                "to": AttributionStatus.OPEN.value,
            },
        )

    owner = await get_or_404(db, Consultant, new_owner_id, label="Consultant")
    if not owner.is_active:
        raise ValidationFailedError("New owner is not an active consultant", details={"consultant_id": str(owner.id)})

    previous_owner = company.attribution_owner_id
    company.attribution_owner_id = owner.id
    company.attribution_status = AttributionStatus.OPEN.value
    company.attribution_locked_at = None
    company.locked_until = None
    company.attribution_expired_at = None

    await audit.append(
        db,
        entity_type=AuditEntity.COMPANY,
        entity_id=company.id,
        action=AuditAction.REASSIGN,
        actor=actor,
        description=reason,
        changes={
            "attribution_owner_id": [previous_owner, owner.id],
            "attribution_status": [current.value, company.attribution_status],
        },
    )
    await commit_or_conflict(db, "Company was modified concurrently; reload and retry")
    logger.info("attribution for company %s reassigned %s -> %s", company.id, previous_owner, owner.id)
    return company
