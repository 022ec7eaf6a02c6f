# backend/hrm8/api/v1/companies.py
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.db.session import get_db
from hrm8.models.company import Company
from hrm8.schemas.attribution import AttributionLock, AttributionOut, AttributionReassign, ExpiryRunOut
from hrm8.services import attribution

router = APIRouter(prefix="/companies", tags=["attribution"])


def _to_out(company: Company) -> AttributionOut:
    return AttributionOut(
        company_id=company.id,
        company_name=company.name,
        region_id=company.region_id,
        licensee_id=company.licensee_id,
        attribution_owner_id=company.attribution_owner_id,
        attribution_status=company.attribution_status,
        attribution_locked_at=company.attribution_locked_at,
        locked_until=company.locked_until,
        attribution_expired_at=company.attribution_expired_at,
        version=company.version,
    )


@router.post("/attribution/expire", response_model=ExpiryRunOut)
async def run_attribution_expiry(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.ATTRIBUTION_MANAGE)),
) -> ExpiryRunOut:
    """
    Manual trigger for the periodic expiry job.
    """
    run = await attribution.expire_attributions(db, actor=actor)
    return ExpiryRunOut(expired=run.expired, deferred=run.deferred)


@router.get("/{company_id}/attribution", response_model=AttributionOut)
async def get_attribution(
    company_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.ATTRIBUTION_READ)),
) -> AttributionOut:
    return _to_out(await attribution.get_attribution(db, company_id, actor=actor))


@router.post("/{company_id}/attribution/lock", response_model=AttributionOut)
async def lock_attribution(
    company_id: UUID,
    payload: AttributionLock | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.ATTRIBUTION_MANAGE)),
) -> AttributionOut:
    payload = payload or AttributionLock()
    company = await attribution.lock_attribution(
        db, company_id, actor=actor, reason=payload.reason, expected_version=payload.expected_version
    )
    return _to_out(company)


@router.post("/{company_id}/attribution/reassign", response_model=AttributionOut)
async def reassign_attribution(
    company_id: UUID,
    payload: AttributionReassign,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.ATTRIBUTION_MANAGE)),
) -> AttributionOut:
    company = await attribution.reassign_attribution(
        db,
        company_id,
        actor=actor,
        new_owner_id=payload.new_owner_id,
        reason=payload.reason,
        expected_version=payload.expected_version,
    )
    return _to_out(company)
