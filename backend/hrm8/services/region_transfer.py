# backend/hrm8/services/region_transfer.py
"""
Region ownership transfer.

preview_impact() only counts. transfer_ownership() moves every company, job,
consultant, open invoice and in-flight opportunity of the region to the target
licensee, repoints the region and writes one TRANSFER audit entry, all in one
transaction. Revenue events keep their recorded licensee snapshot, so money
already earned stays with the previous owner.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.auth.permissions import Actor
from hrm8.core.errors import InvalidStateError, ValidationFailedError
from hrm8.core.ledger import ensure_aware, utcnow
from hrm8.core.states import IN_FLIGHT_OPPORTUNITY_STAGES, InvoiceStatus, JobStatus, SettlementStatus
from hrm8.models.company import Company
from hrm8.models.consultant import Consultant
from hrm8.models.invoice import Invoice
from hrm8.models.job import Job
from hrm8.models.licensee import Licensee
from hrm8.models.opportunity import Opportunity
from hrm8.models.region import Region
from hrm8.models.settlement import Settlement
from hrm8.services import audit
from hrm8.services.audit import AuditAction, AuditEntity
from hrm8.services.common import check_version, commit_or_conflict, get_for_update, get_or_404, transactional

logger = logging.getLogger(__name__)

_IN_FLIGHT = sorted(s.value for s in IN_FLIGHT_OPPORTUNITY_STAGES)


@dataclass(frozen=True)
class TransferImpact:
    companies: int
    jobs: int
    open_jobs: int
    consultants: int
    open_invoices: int
    opportunities: int


@dataclass
class TransferResult:
    region: Region
    previous_licensee_id: Optional[uuid.UUID]
    target_licensee_id: uuid.UUID
    impact: TransferImpact


async def _count(db: AsyncSession, model, *conditions) -> int:
    return int(await db.scalar(select(func.count()).select_from(model).where(*conditions)) or 0)


async def preview_impact(db: AsyncSession, region_id: uuid.UUID) -> tuple[Region, TransferImpact]:
    region = await get_or_404(db, Region, region_id, label="Region")
    impact = TransferImpact(
        companies=await _count(db, Company, Company.region_id == region.id),
        jobs=await _count(db, Job, Job.region_id == region.id),
        open_jobs=await _count(db, Job, Job.region_id == region.id, Job.status == JobStatus.OPEN.value),
        consultants=await _count(db, Consultant, Consultant.region_id == region.id),
        open_invoices=await _count(
            db, Invoice, Invoice.region_id == region.id, Invoice.status == InvoiceStatus.OPEN.value
        ),
        opportunities=await _count(
            db, Opportunity, Opportunity.region_id == region.id, Opportunity.stage.in_(_IN_FLIGHT)
        ),
    )
    return region, impact


@transactional
async def transfer_ownership(
    db: AsyncSession,
    region_id: uuid.UUID,
    *,
    actor: Actor,
    target_licensee_id: uuid.UUID,
    audit_note: Optional[str] = None,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TransferResult:
    region = await get_for_update(db, Region, region_id, label="Region")
    check_version(region, expected_version, label="Region")

    target = await get_or_404(db, Licensee, target_licensee_id, label="Licensee")
    if not target.is_active:
        raise ValidationFailedError("Target licensee is not active", details={"licensee_id": str(target.id)})
    previous_licensee_id = region.licensee_id
    if previous_licensee_id == target.id:
        raise ValidationFailedError(
            "Region already belongs to this licensee",
            details={"region_id": str(region.id), "licensee_id": str(target.id)},
        )

    now = ensure_aware(now or utcnow())
    if previous_licensee_id is not None:
        blocking = (
            await db.execute(
                select(Settlement).where(
                    Settlement.licensee_id == previous_licensee_id,
                    Settlement.status == SettlementStatus.PENDING.value,
                    Settlement.period_start <= now,
                    Settlement.period_end > now,
                )
            )
        ).scalars().first()
        if blocking is not None:
            logger.warning("transfer of region %s blocked by pending settlement %s", region.id, blocking.id)
            raise InvalidStateError(
                "The current licensee has a pending settlement covering this period; mark it paid first",
                details={"settlement_id": str(blocking.id)},
            )

    async def locked(model, *conditions):
        return (
            await db.execute(
                select(model).where(*conditions).with_for_update().execution_options(populate_existing=True)
            )
        ).scalars().all()

    companies = await locked(Company, Company.region_id == region.id)
    jobs = await locked(Job, Job.region_id == region.id)
    consultants = await locked(Consultant, Consultant.region_id == region.id)
    invoices = await locked(Invoice, Invoice.region_id == region.id, Invoice.status == InvoiceStatus.OPEN.value)
    opportunities = await locked(Opportunity, Opportunity.region_id == region.id, Opportunity.stage.in_(_IN_FLIGHT))

    for row in [*companies, *jobs, *consultants, *invoices, *opportunities]:
        row.licensee_id = target.id
    region.licensee_id = target.id

    impact = TransferImpact(
        companies=len(companies),
        jobs=len(jobs),
        open_jobs=sum(1 for j in jobs if j.status == JobStatus.OPEN.value),
        consultants=len(consultants),
        open_invoices=len(invoices),
        opportunities=len(opportunities),
    )
    await db.flush()

    await audit.append(
        db,
        entity_type=AuditEntity.REGION,
        entity_id=region.id,
        action=AuditAction.TRANSFER,
        actor=actor,
        description=audit_note,
        changes={
            "licensee_id": [previous_licensee_id, target.id],
            **asdict(impact),
        },
    )
    await commit_or_conflict(db, "Region changed during the transfer; nothing was moved, reload and retry")
    logger.info(
        "region %s transferred %s -> %s (%d companies, %d jobs, %d consultants, %d invoices)",
        region.id,
        previous_licensee_id,
        target.id,
        impact.companies,
        impact.jobs,
        impact.consultants,
        impact.open_invoices,
    )
    return TransferResult(
        region=region,
        previous_licensee_id=previous_licensee_id,
        target_licensee_id=target.id,
        impact=impact,
    )


async def list_regions(db: AsyncSession, *, licensee_id: Optional[uuid.UUID] = None) -> list[Region]:
    stmt = select(Region).order_by(Region.name.asc())
    if licensee_id is not None:
        stmt = stmt.where(Region.licensee_id == licensee_id)
    return list((await db.execute(stmt)).scalars().all())
