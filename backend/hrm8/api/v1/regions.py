# backend/hrm8/api/v1/regions.py
from __future__ import annotations

from dataclasses import asdict
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, ROLE_REGIONAL_ADMIN, Actor
from hrm8.db.session import get_db
from hrm8.schemas.regions import RegionListOut, RegionOut, RegionTransfer, RegionTransferOut, TransferImpactOut
from hrm8.services import region_transfer

router = APIRouter(prefix="/regions", tags=["regions"])


@router.get("", response_model=RegionListOut)
async def list_regions(
    licensee_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.REGIONS_READ)),
) -> RegionListOut:
    if actor.role == ROLE_REGIONAL_ADMIN:
        licensee_id = actor.licensee_id
    rows = await region_transfer.list_regions(db, licensee_id=licensee_id)
    return RegionListOut(items=[RegionOut.model_validate(r) for r in rows])


@router.get("/{region_id}/transfer-impact", response_model=TransferImpactOut)
async def preview_transfer_impact(
    region_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.REGIONS_TRANSFER)),
) -> TransferImpactOut:
    region, impact = await region_transfer.preview_impact(db, region_id)
    return TransferImpactOut(region_id=region.id, current_licensee_id=region.licensee_id, **asdict(impact))


@router.post("/{region_id}/transfer", response_model=RegionTransferOut)
async def transfer_region(
    region_id: UUID,
    payload: RegionTransfer,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.REGIONS_TRANSFER)),
) -> RegionTransferOut:
    """
    Body: {"target_licensee_id": "...", "audit_note": "..."}
    Moves everything in the region at once or nothing at all.
    """
    result = await region_transfer.transfer_ownership(
        db,
        region_id,
        actor=actor,
        target_licensee_id=payload.target_licensee_id,
        audit_note=payload.audit_note,
        expected_version=payload.expected_version,
    )
    return RegionTransferOut(
        region=RegionOut.model_validate(result.region),
        previous_licensee_id=result.previous_licensee_id,
        target_licensee_id=result.target_licensee_id,
        impact=TransferImpactOut(
            region_id=result.region.id,
            current_licensee_id=result.target_licensee_id,
            **asdict(result.impact),
        ),
    )
