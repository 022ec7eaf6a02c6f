# backend/hrm8/api/v1/commissions.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.db.session import get_db
from hrm8.schemas.commissions import (
    BulkCommissionPay,
    BulkCommissionPayOut,
    CommissionCreate,
    CommissionOut,
    CommissionPageOut,
    CommissionPay,
)
from hrm8.services import commissions

router = APIRouter(prefix="/commissions", tags=["commissions"])


@router.get("", response_model=CommissionPageOut)
async def list_commissions(
    consultant_id: Optional[UUID] = None,
    company_id: Optional[UUID] = None,
    region_id: Optional[UUID] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    type_filter: Optional[str] = Query(
        default=None,
        alias="type",
        description="PLACEMENT | SUBSCRIPTION | SERVICE_FEE, or RECRUITER / SALES",
    ),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.COMMISSIONS_READ)),
) -> CommissionPageOut:
    rows, total = await commissions.list_commissions(
        db,
        actor=actor,
        consultant_id=consultant_id,
        company_id=company_id,
        region_id=region_id,
        status=status_filter,
        commission_type=type_filter,
        limit=limit,
        offset=offset,
    )
    return CommissionPageOut(
        items=[CommissionOut.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=CommissionOut, status_code=status.HTTP_201_CREATED)
async def create_commission(
    payload: CommissionCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.COMMISSIONS_MANAGE)),
):
    entry, created = await commissions.create_commission(
        db,
        actor=actor,
        consultant_id=payload.consultant_id,
        company_id=payload.company_id,
        source_event_id=payload.source_event_id,
        commission_type=payload.type,
        base_value=payload.base_value,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return entry


@router.post("/pay", response_model=BulkCommissionPayOut)
async def pay_commissions(
    payload: BulkCommissionPay,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.COMMISSIONS_MANAGE)),
) -> BulkCommissionPayOut:
    result = await commissions.pay_commissions(
        db, payload.commission_ids, actor=actor, payment_reference=payload.payment_reference
    )
    return BulkCommissionPayOut(processed=result.processed, total=result.total, errors=result.errors)


@router.get("/{commission_id}", response_model=CommissionOut)
async def get_commission(
    commission_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.COMMISSIONS_READ)),
):
    return await commissions.get_commission(db, commission_id, actor=actor)


@router.post("/{commission_id}/confirm", response_model=CommissionOut)
async def confirm_commission(
    commission_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.COMMISSIONS_MANAGE)),
):
    return await commissions.confirm_commission(db, commission_id, actor=actor)


@router.post("/{commission_id}/pay", response_model=CommissionOut)
async def mark_commission_paid(
    commission_id: UUID,
    payload: CommissionPay,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.COMMISSIONS_MANAGE)),
):
    return await commissions.mark_commission_paid(
        db, commission_id, actor=actor, payment_reference=payload.payment_reference
    )
