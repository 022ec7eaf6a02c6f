# backend/hrm8/api/v1/settlements.py
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.db.session import get_db
from hrm8.schemas.settlements import (
    GeneratedSettlementOut,
    SettlementGenerate,
    SettlementMarkPaid,
    SettlementOut,
    SettlementPageOut,
    SettlementStatsOut,
)
from hrm8.services import settlements

router = APIRouter(prefix="/settlements", tags=["settlements"])


@router.get("", response_model=SettlementPageOut)
async def list_settlements(
    licensee_id: Optional[UUID] = None,
    region_id: Optional[UUID] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.SETTLEMENTS_READ)),
) -> SettlementPageOut:
    rows, total = await settlements.list_settlements(
        db,
        actor=actor,
        licensee_id=licensee_id,
        region_id=region_id,
        status=status_filter,
        period_start=period_start,
        period_end=period_end,
        limit=limit,
        offset=offset,
    )
    return SettlementPageOut(
        items=[SettlementOut.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=SettlementStatsOut)
async def settlement_stats(
    licensee_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.SETTLEMENTS_READ)),
) -> SettlementStatsOut:
    result = await settlements.settlement_stats(db, actor=actor, licensee_id=licensee_id)
    return SettlementStatsOut(**result.__dict__)


@router.post("/generate", response_model=GeneratedSettlementOut, status_code=status.HTTP_201_CREATED)
async def generate_settlement(
    payload: SettlementGenerate,
    response: Response,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.SETTLEMENTS_MANAGE)),
) -> GeneratedSettlementOut:
    """
    Body: {"licensee_id": "...", "period_start": "2025-01-01T00:00:00Z", "period_end": "2025-02-01T00:00:00Z"}
    Regenerating a PENDING settlement with the same bounds recomputes it (200).
    """
    result = await settlements.generate_settlement(
        db,
        actor=actor,
        licensee_id=payload.licensee_id,
        period_start=payload.period_start,
        period_end=payload.period_end,
        region_id=payload.region_id,
    )
    if result.replaced:
        response.status_code = status.HTTP_200_OK
    return GeneratedSettlementOut(settlement=SettlementOut.model_validate(result.settlement), replaced=result.replaced)


@router.get("/{settlement_id}", response_model=SettlementOut)
async def get_settlement(
    settlement_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.SETTLEMENTS_READ)),
):
    return await settlements.get_settlement(db, settlement_id, actor=actor)


@router.post("/{settlement_id}/mark-paid", response_model=SettlementOut)
async def mark_settlement_paid(
    settlement_id: UUID,
    payload: SettlementMarkPaid | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.SETTLEMENTS_MANAGE)),
):
    payload = payload or SettlementMarkPaid()
    return await settlements.mark_settlement_paid(
        db,
        settlement_id,
        actor=actor,
        payment_reference=payload.payment_reference,
        payment_date=payload.payment_date,
        expected_version=payload.expected_version,
    )
