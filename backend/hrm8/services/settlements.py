# backend/hrm8/services/settlements.py
"""
Licensee settlements.

A settlement covers one closed-open period [period_start, period_end) for one
licensee (optionally narrowed to one of its regions). Revenue is taken from the
licensee snapshot on each revenue event, so a region transfer never moves
revenue between licensees after the fact. Events whose commission is still
PENDING are left out of the totals, and a settlement cannot be marked PAID
until they are confirmed and the settlement regenerated, so no revenue is
stranded in a closed period.

Periods never overlap per licensee. Regenerating the same bounds while the
settlement is PENDING recomputes it in place; anything else that overlaps is a
DuplicatePeriodError.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.auth.permissions import ROLE_REGIONAL_ADMIN, Actor
from hrm8.core.config import settings
from hrm8.core.errors import DuplicatePeriodError, InvalidStateError, ValidationFailedError
from hrm8.core.ledger import Period, ensure_aware, split_revenue, utcnow
from hrm8.core.states import (
    SETTLEMENT_TRANSITIONS,
    CommissionStatus,
    SettlementStatus,
    ensure_transition,
    parse_status,
)
from hrm8.models.commission_entry import CommissionEntry
from hrm8.models.licensee import Licensee
from hrm8.models.region import Region
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


@dataclass(frozen=True)
class SettlementTotals:
    total_revenue: int
    event_count: int


@dataclass
class GeneratedSettlement:
    settlement: Settlement
    replaced: bool


@dataclass(frozen=True)
class SettlementStats:
    total_pending: int
    total_paid: int
    pending_count: int
    paid_count: int
    current_period_revenue: int
    currency: str


def _period_events(licensee_id: uuid.UUID, period: Period, region_id: Optional[uuid.UUID]) -> list:
    conditions = [
        RevenueEvent.licensee_id == licensee_id,
        RevenueEvent.occurred_at >= period.start,
        RevenueEvent.occurred_at < period.end,
    ]
    if region_id is not None:
        conditions.append(RevenueEvent.region_id == region_id)
    return conditions


async def compute_totals(
    db: AsyncSession,
    *,
    licensee_id: uuid.UUID,
    period: Period,
    region_id: Optional[uuid.UUID] = None,
) -> SettlementTotals:
    conditions = _period_events(licensee_id, period, region_id) + [
        # events without a commission count; events with one count once it is CONFIRMED or PAID
        or_(
            CommissionEntry.id.is_(None),
            CommissionEntry.status.in_([CommissionStatus.CONFIRMED.value, CommissionStatus.PAID.value]),
        ),
    ]

    total, count = (
        await db.execute(
            select(func.coalesce(func.sum(RevenueEvent.value), 0), func.count(RevenueEvent.id))
            .select_from(RevenueEvent)
            .outerjoin(CommissionEntry, CommissionEntry.source_event_id == RevenueEvent.source_event_id)
            .where(*conditions)
        )
    ).one()
    return SettlementTotals(total_revenue=int(total or 0), event_count=int(count or 0))


async def unconfirmed_event_ids(
    db: AsyncSession,
    *,
    licensee_id: uuid.UUID,
    period: Period,
    region_id: Optional[uuid.UUID] = None,
) -> list[uuid.UUID]:
    """Revenue events in the period whose commission is still PENDING."""
    return list(
        (
            await db.execute(
                select(RevenueEvent.id)
                .join(CommissionEntry, CommissionEntry.source_event_id == RevenueEvent.source_event_id)
                .where(
                    *_period_events(licensee_id, period, region_id),
                    CommissionEntry.status == CommissionStatus.PENDING.value,
                )
                .order_by(RevenueEvent.occurred_at.asc())
            )
        ).scalars().all()
    )


@transactional
async def generate_settlement(
    db: AsyncSession,
    *,
    actor: Actor,
    licensee_id: uuid.UUID,
    period_start: datetime,
    period_end: datetime,
    region_id: Optional[uuid.UUID] = None,
) -> GeneratedSettlement:
    period = Period.of(period_start, period_end)
    ensure_licensee_scope(actor, licensee_id)

    # serializes generation per licensee
    licensee = await get_for_update(db, Licensee, licensee_id, label="Licensee")
    if region_id is not None:
        region = await get_or_404(db, Region, region_id, label="Region")
        if region.licensee_id != licensee.id:
            raise ValidationFailedError(
                "Region does not belong to this licensee",
                details={"region_id": str(region_id), "licensee_id": str(licensee_id)},
            )

    overlapping = (
        await db.execute(
            select(Settlement)
            .where(
                Settlement.licensee_id == licensee.id,
                Settlement.period_start < period.end,
                Settlement.period_end > period.start,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalars().all()

    target: Optional[Settlement] = None
    for existing in overlapping:
        replaceable = (
            existing.status == SettlementStatus.PENDING.value
            and period.same_bounds(existing.period_start, existing.period_end)
            and existing.region_id == region_id
        )
        if not replaceable:
            logger.warning(
                "settlement for licensee %s [%s, %s) overlaps %s (%s)",
                licensee.id,
                period.start,
                period.end,
                existing.id,
                existing.status,
            )
            raise DuplicatePeriodError(
                "A settlement already covers part of this period",
                details={
                    "settlement_id": str(existing.id),
                    "status": existing.status,
                    "period_start": ensure_aware(existing.period_start).isoformat(),
                    "period_end": ensure_aware(existing.period_end).isoformat(),
                },
            )
        target = existing

    totals = await compute_totals(db, licensee_id=licensee.id, period=period, region_id=region_id)
    split = split_revenue(totals.total_revenue, licensee.revenue_share_bps)
    now = utcnow()

    replaced = target is not None
    if target is None:
        target = Settlement(
            licensee_id=licensee.id,
            region_id=region_id,
            period_start=period.start,
            period_end=period.end,
            status=SettlementStatus.PENDING.value,
        )
        db.add(target)

    before = (
        {"total_revenue": target.total_revenue, "licensee_share": target.licensee_share, "hrm8_share": target.hrm8_share}
        if replaced
        else None
    )
    target.total_revenue = split.total_revenue
    target.licensee_share = split.licensee_share
    target.hrm8_share = split.hrm8_share
    target.revenue_share_bps = licensee.revenue_share_bps
    target.event_count = totals.event_count
    target.currency = settings.DEFAULT_CURRENCY
    target.generated_at = now
    target.generated_by = actor.user_id
    await db.flush()

    await audit.append(
        db,
        entity_type=AuditEntity.SETTLEMENT,
        entity_id=target.id,
        action=AuditAction.REGENERATE if replaced else AuditAction.GENERATE,
        actor=actor,
        changes={
            "licensee_id": licensee.id,
            "region_id": region_id,
            "period_start": period.start.isoformat(),
            "period_end": period.end.isoformat(),
            "total_revenue": split.total_revenue,
            "licensee_share": split.licensee_share,
            "hrm8_share": split.hrm8_share,
            "previous": before,
        },
    )
    await commit_or_conflict(db, "Settlement changed while it was being generated; retry")
    logger.info(
        "settlement %s %s for licensee %s: total=%s licensee=%s hrm8=%s",
        target.id,
        "recomputed" if replaced else "generated",
        licensee.id,
        split.total_revenue,
        split.licensee_share,
        split.hrm8_share,
    )
    return GeneratedSettlement(settlement=target, replaced=replaced)


@transactional
async def mark_settlement_paid(
    db: AsyncSession,
    settlement_id: uuid.UUID,
    *,
    actor: Actor,
    payment_reference: Optional[str] = None,
    payment_date: Optional[datetime] = None,
    expected_version: Optional[int] = None,
) -> Settlement:
    settlement = await get_for_update(db, Settlement, settlement_id, label="Settlement")
    check_version(settlement, expected_version, label="Settlement")
    ensure_licensee_scope(actor, settlement.licensee_id)
    ensure_transition(
        SETTLEMENT_TRANSITIONS,
        SettlementStatus(settlement.status),
        SettlementStatus.PAID,
        entity="Settlement",
        entity_id=settlement.id,
    )

    # PAID closes the period for good, so everything in it must be counted first
    period = Period.of(settlement.period_start, settlement.period_end)
    waiting = await unconfirmed_event_ids(
        db, licensee_id=settlement.licensee_id, period=period, region_id=settlement.region_id
    )
    if waiting:
        logger.warning("settlement %s not paid: %d events await commission confirmation", settlement.id, len(waiting))
        raise InvalidStateError(
            "Revenue in this period still has unconfirmed commissions; confirm them and regenerate first",
            details={"settlement_id": str(settlement.id), "revenue_event_ids": [str(i) for i in waiting]},
        )
    current = await compute_totals(
        db, licensee_id=settlement.licensee_id, period=period, region_id=settlement.region_id
    )
    if (current.total_revenue, current.event_count) != (settlement.total_revenue, settlement.event_count):
        logger.warning("settlement %s not paid: totals are out of date", settlement.id)
        raise InvalidStateError(
            "Settlement totals are out of date; regenerate it before marking it paid",
            details={
                "settlement_id": str(settlement.id),
                "total_revenue": settlement.total_revenue,
                "current_total_revenue": current.total_revenue,
            },
        )

    settlement.status = SettlementStatus.PAID.value
    settlement.payment_date = ensure_aware(payment_date or utcnow())
    settlement.payment_reference = (payment_reference or "").strip() or None
    await audit.append(
        db,
        entity_type=AuditEntity.SETTLEMENT,
        entity_id=settlement.id,
        action=AuditAction.PAY,
        actor=actor,
        changes={
            "status": [SettlementStatus.PENDING.value, settlement.status],
            "payment_date": settlement.payment_date.isoformat(),
            "payment_reference": settlement.payment_reference,
        },
    )
    await commit_or_conflict(db, "Settlement was modified concurrently; reload and retry")
    logger.info("settlement %s PENDING -> PAID", settlement.id)
    return settlement


def _scope(actor: Actor, licensee_id: Optional[uuid.UUID]) -> Optional[uuid.UUID]:
    if actor.role == ROLE_REGIONAL_ADMIN:
        if licensee_id is not None:
            ensure_licensee_scope(actor, licensee_id)
        return actor.licensee_id
    return licensee_id


async def list_settlements(
    db: AsyncSession,
    *,
    actor: Actor,
    licensee_id: Optional[uuid.UUID] = None,
    region_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[Sequence[Settlement], int]:
    conditions = []
    scoped = _scope(actor, licensee_id)
    if scoped is not None:
        conditions.append(Settlement.licensee_id == scoped)
    if region_id is not None:
        # licensee-wide settlements include every region of that licensee
        conditions.append(
            or_(
                Settlement.region_id == region_id,
                and_(
                    Settlement.region_id.is_(None),
                    Settlement.licensee_id.in_(select(Region.licensee_id).where(Region.id == region_id)),
                ),
            )
        )
    if status:
        conditions.append(Settlement.status == parse_status(SettlementStatus, status).value)
    if period_start is not None:
        conditions.append(Settlement.period_end > ensure_aware(period_start))
    if period_end is not None:
        conditions.append(Settlement.period_start < ensure_aware(period_end))

    total = await db.scalar(select(func.count()).select_from(Settlement).where(*conditions))
    rows = (
        await db.execute(
            select(Settlement)
            .where(*conditions)
            .order_by(Settlement.period_start.desc(), Settlement.generated_at.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return rows, int(total or 0)


async def get_settlement(db: AsyncSession, settlement_id: uuid.UUID, *, actor: Actor) -> Settlement:
    settlement = await get_or_404(db, Settlement, settlement_id, label="Settlement")
    ensure_licensee_scope(actor, settlement.licensee_id)
    return settlement


async def settlement_stats(
    db: AsyncSession,
    *,
    actor: Actor,
    licensee_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> SettlementStats:
    scoped = _scope(actor, licensee_id)
    conditions = [Settlement.licensee_id == scoped] if scoped is not None else []

    rows = (
        await db.execute(
            select(
                Settlement.status,
                func.count(Settlement.id),
                func.coalesce(func.sum(Settlement.licensee_share), 0),
            )
            .where(*conditions)
            .group_by(Settlement.status)
        )
    ).all()
    by_status = {status: (int(count), int(amount)) for status, count, amount in rows}

    # current calendar month, in UTC
    now = ensure_aware(now or utcnow())
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if month_start.month == 12:
        month_end = month_start.replace(year=month_start.year + 1, month=1)
    else:
        month_end = month_start.replace(month=month_start.month + 1)
    revenue_conditions = [RevenueEvent.occurred_at >= month_start, RevenueEvent.occurred_at < month_end]
    if scoped is not None:
        revenue_conditions.append(RevenueEvent.licensee_id == scoped)
    current = await db.scalar(select(func.coalesce(func.sum(RevenueEvent.value), 0)).where(*revenue_conditions))

    pending_count, total_pending = by_status.get(SettlementStatus.PENDING.value, (0, 0))
    paid_count, total_paid = by_status.get(SettlementStatus.PAID.value, (0, 0))
    return SettlementStats(
        total_pending=total_pending,
        total_paid=total_paid,
        pending_count=pending_count,
        paid_count=paid_count,
        current_period_revenue=int(current or 0),
        currency=settings.DEFAULT_CURRENCY,
    )
