# backend/hrm8/services/commissions.py
"""
Commission ledger.

One entry per revenue event (source_event_id is unique). amount is fixed at
creation from the consultant's rate at that moment. PENDING -> CONFIRMED ->
PAID, and PAID is final.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.auth.permissions import ROLE_CONSULTANT, ROLE_REGIONAL_ADMIN, ROLE_SALES_AGENT, Actor
from hrm8.core.config import settings
from hrm8.core.errors import EngineError, ForbiddenError, InvalidStateError, ValidationFailedError
from hrm8.core.ledger import apply_rate, require_minor_units, utcnow
from hrm8.core.states import (
    COMMISSION_TRANSITIONS,
    COMMISSION_TYPE_ALIASES,
    CommissionStatus,
    CommissionType,
    ensure_transition,
    parse_status,
)
from hrm8.models.commission_entry import CommissionEntry
from hrm8.models.company import Company
from hrm8.models.consultant import Consultant
from hrm8.models.region import Region
from hrm8.models.withdrawal import Withdrawal, WithdrawalClaim
from hrm8.services import audit
from hrm8.services.audit import AuditAction, AuditEntity
from hrm8.services.common import (
    commit_or_conflict,
    ensure_licensee_scope,
    get_for_update,
    get_or_404,
    transactional,
)

logger = logging.getLogger(__name__)


@dataclass
class BulkPaymentResult:
    processed: int
    total: int
    errors: list[dict[str, Any]] = field(default_factory=list)


def parse_commission_types(raw: Optional[str]) -> frozenset[CommissionType]:
    """
    Accepts ledger types (PLACEMENT, SUBSCRIPTION, SERVICE_FEE) and the
    dashboard's RECRUITER / SALES groupings.
    """
    value = (raw or "").strip().upper()
    if value in COMMISSION_TYPE_ALIASES:
        return COMMISSION_TYPE_ALIASES[value]
    return frozenset({parse_status(CommissionType, value, field="type")})


async def _by_source_event(db: AsyncSession, source_event_id: str) -> Optional[CommissionEntry]:
    return (
        await db.execute(select(CommissionEntry).where(CommissionEntry.source_event_id == source_event_id))
    ).scalar_one_or_none()


async def add_commission(
    db: AsyncSession,
    *,
    actor: Actor,
    consultant_id: uuid.UUID,
    company_id: uuid.UUID,
    source_event_id: str,
    commission_type: CommissionType,
    base_value: int,
    region_id: Optional[uuid.UUID] = None,
    currency: Optional[str] = None,
) -> tuple[CommissionEntry, bool]:
    """
    Insert inside the caller's transaction. Returns (entry, created); a replayed
    source_event_id returns the existing entry untouched.
    """
    existing = await _by_source_event(db, source_event_id)
    if existing is not None:
        return existing, False

    consultant = await get_or_404(db, Consultant, consultant_id, label="Consultant")
    require_minor_units(base_value, field="base_value")
    rate_bps = consultant.commission_rate_bps

    entry = CommissionEntry(
        consultant_id=consultant.id,
        company_id=company_id,
        region_id=region_id,
        source_event_id=source_event_id,
        commission_type=commission_type.value,
        base_value=base_value,
        rate_bps=rate_bps,
        amount=apply_rate(base_value, rate_bps),
        currency=currency or settings.DEFAULT_CURRENCY,
        status=CommissionStatus.PENDING.value,
    )
    db.add(entry)
    await db.flush()

    await audit.append(
        db,
        entity_type=AuditEntity.COMMISSION,
        entity_id=entry.id,
        action=AuditAction.CREATE,
        actor=actor,
        changes={
            "consultant_id": entry.consultant_id,
            "source_event_id": source_event_id,
            "base_value": base_value,
            "rate_bps": rate_bps,
            "amount": entry.amount,
        },
    )
    return entry, True


@transactional
async def create_commission(
    db: AsyncSession,
    *,
    actor: Actor,
    consultant_id: uuid.UUID,
    company_id: uuid.UUID,
    source_event_id: str,
    commission_type: str,
    base_value: int,
) -> tuple[CommissionEntry, bool]:
    source_event_id = (source_event_id or "").strip()
    if not source_event_id:
        raise ValidationFailedError("source_event_id is required", details={"field": "source_event_id"})
    ctype = parse_status(CommissionType, commission_type, field="type")
    company = await get_or_404(db, Company, company_id, label="Company")

    try:
        entry, created = await add_commission(
            db,
            actor=actor,
            consultant_id=consultant_id,
            company_id=company.id,
            source_event_id=source_event_id,
            commission_type=ctype,
            base_value=base_value,
            region_id=company.region_id,
        )
        await db.commit()
    except IntegrityError:
        # a concurrent replay of the same source event committed first
        await db.rollback()
        entry = await _by_source_event(db, source_event_id)
        if entry is None:
            raise
        return entry, False

    if created:
        logger.info("commission %s created for %s (%s)", entry.id, consultant_id, source_event_id)
    return entry, created


async def _live_claim(db: AsyncSession, entry_id: uuid.UUID) -> Optional[Withdrawal]:
    return (
        await db.execute(
            select(Withdrawal)
            .join(WithdrawalClaim, WithdrawalClaim.withdrawal_id == Withdrawal.id)
            .where(WithdrawalClaim.commission_entry_id == entry_id)
        )
    ).scalar_one_or_none()


@transactional
async def confirm_commission(db: AsyncSession, entry_id: uuid.UUID, *, actor: Actor) -> CommissionEntry:
    entry = await get_for_update(db, CommissionEntry, entry_id, label="Commission")
    ensure_transition(
        COMMISSION_TRANSITIONS,
        CommissionStatus(entry.status),
        CommissionStatus.CONFIRMED,
        entity="Commission",
        entity_id=entry.id,
    )
    entry.status = CommissionStatus.CONFIRMED.value
    entry.confirmed_at = utcnow()
    await audit.append(
        db,
        entity_type=AuditEntity.COMMISSION,
        entity_id=entry.id,
        action=AuditAction.CONFIRM,
        actor=actor,
        changes={"status": [CommissionStatus.PENDING.value, entry.status]},
    )
    await commit_or_conflict(db, "Commission was modified concurrently; reload and retry")
    logger.info("commission %s PENDING -> CONFIRMED", entry.id)
    return entry


def settle_entry(entry: CommissionEntry, payment_reference: str) -> None:
    """CONFIRMED -> PAID on an entry the caller holds locked."""
    ensure_transition(
        COMMISSION_TRANSITIONS,
        CommissionStatus(entry.status),
        CommissionStatus.PAID,
        entity="Commission",
        entity_id=entry.id,
    )
    entry.status = CommissionStatus.PAID.value
    entry.paid_at = utcnow()
    entry.payment_reference = payment_reference


@transactional
async def mark_commission_paid(
    db: AsyncSession,
    entry_id: uuid.UUID,
    *,
    actor: Actor,
    payment_reference: str,
) -> CommissionEntry:
    reference = (payment_reference or "").strip()
    if not reference:
        raise ValidationFailedError("payment_reference is required", details={"field": "payment_reference"})

    entry = await get_for_update(db, CommissionEntry, entry_id, label="Commission")
    ensure_transition(
        COMMISSION_TRANSITIONS,
        CommissionStatus(entry.status),
        CommissionStatus.PAID,
        entity="Commission",
        entity_id=entry.id,
    )
    claim = await _live_claim(db, entry.id)
    if claim is not None:
        raise InvalidStateError(
            "Commission is held by a withdrawal; pay it through that withdrawal",
            details={"commission_id": str(entry.id), "withdrawal_id": str(claim.id), "withdrawal_status": claim.status},
        )

    settle_entry(entry, reference)
    await audit.append(
        db,
        entity_type=AuditEntity.COMMISSION,
        entity_id=entry.id,
        action=AuditAction.PAY,
        actor=actor,
        changes={"status": [CommissionStatus.CONFIRMED.value, entry.status], "payment_reference": reference},
    )
    await commit_or_conflict(db, "Commission was modified concurrently; reload and retry")
    logger.info("commission %s CONFIRMED -> PAID (%s)", entry.id, reference)
    return entry


async def pay_commissions(
    db: AsyncSession,
    entry_ids: Sequence[uuid.UUID],
    *,
    actor: Actor,
    payment_reference: str,
) -> BulkPaymentResult:
    """
    Each entry is paid in its own transaction. A failure is reported and the
    loop moves on; entries already paid stay paid.
    """
    unique_ids = list(dict.fromkeys(entry_ids))
    result = BulkPaymentResult(processed=0, total=len(unique_ids))
    for entry_id in unique_ids:
        try:
            await mark_commission_paid(db, entry_id, actor=actor, payment_reference=payment_reference)
        except EngineError as exc:
            logger.warning("bulk payment skipped commission %s: %s", entry_id, exc.message)
            result.errors.append({"id": str(entry_id), "code": exc.code, "message": exc.message})
            continue
        result.processed += 1
    return result


def _scope_conditions(actor: Actor) -> list:
    if actor.role in {ROLE_CONSULTANT, ROLE_SALES_AGENT}:
        return [CommissionEntry.consultant_id == actor.consultant_id]
    if actor.role == ROLE_REGIONAL_ADMIN:
        return [CommissionEntry.region_id.in_(select(Region.id).where(Region.licensee_id == actor.licensee_id))]
    return []


async def list_commissions(
    db: AsyncSession,
    *,
    actor: Actor,
    consultant_id: Optional[uuid.UUID] = None,
    company_id: Optional[uuid.UUID] = None,
    region_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    commission_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[Sequence[CommissionEntry], int]:
    conditions = _scope_conditions(actor)
    if consultant_id:
        conditions.append(CommissionEntry.consultant_id == consultant_id)
    if company_id:
        conditions.append(CommissionEntry.company_id == company_id)
    if region_id:
        conditions.append(CommissionEntry.region_id == region_id)
    if status:
        conditions.append(CommissionEntry.status == parse_status(CommissionStatus, status).value)
    if commission_type:
        types = parse_commission_types(commission_type)
        conditions.append(CommissionEntry.commission_type.in_(sorted(t.value for t in types)))

    total = await db.scalar(select(func.count()).select_from(CommissionEntry).where(*conditions))
    rows = (
        await db.execute(
            select(CommissionEntry)
            .where(*conditions)
            .order_by(CommissionEntry.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return rows, int(total or 0)


async def get_commission(db: AsyncSession, entry_id: uuid.UUID, *, actor: Actor) -> CommissionEntry:
    entry = await get_or_404(db, CommissionEntry, entry_id, label="Commission")
    if actor.role in {ROLE_CONSULTANT, ROLE_SALES_AGENT} and entry.consultant_id != actor.consultant_id:
        raise ForbiddenError("This commission belongs to another consultant")
    if actor.role == ROLE_REGIONAL_ADMIN:
        region = await db.get(Region, entry.region_id) if entry.region_id else None
        ensure_licensee_scope(actor, region.licensee_id if region else None)
    return entry


