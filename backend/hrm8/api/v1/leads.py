# backend/hrm8/api/v1/leads.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.db.session import get_db
from hrm8.schemas.conversions import ConversionRequestOut, ConversionSubmit
from hrm8.schemas.leads import LeadCreate, LeadDetailOut, LeadListOut, LeadOut, LeadTransition
from hrm8.services import conversion

router = APIRouter(prefix="/leads", tags=["leads"])


@router.post("", response_model=LeadOut, status_code=status.HTTP_201_CREATED)
async def create_lead(
    payload: LeadCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.LEADS_WRITE)),
):
    return await conversion.create_lead(db, actor=actor, **payload.model_dump())


@router.get("", response_model=LeadListOut)
async def list_leads(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.LEADS_READ)),
) -> LeadListOut:
    rows, total = await conversion.list_leads(db, actor=actor, status=status_filter, limit=limit, offset=offset)
    return LeadListOut(items=[LeadOut.model_validate(r) for r in rows], total=total, limit=limit, offset=offset)


@router.get("/{lead_id}", response_model=LeadDetailOut)
async def get_lead(
    lead_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.LEADS_READ)),
) -> LeadDetailOut:
    lead, requests = await conversion.get_lead(db, lead_id, actor=actor)
    return LeadDetailOut(
        **LeadOut.model_validate(lead).model_dump(),
        approval_state=conversion.effective_approval_state(requests),
        conversion_requests=[ConversionRequestOut.model_validate(r) for r in requests],
    )


@router.post("/{lead_id}/qualify", response_model=LeadOut)
async def qualify_lead(
    lead_id: UUID,
    payload: LeadTransition | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.LEADS_WRITE)),
):
    expected = payload.expected_version if payload else None
    return await conversion.qualify_lead(db, lead_id, actor=actor, expected_version=expected)


@router.post("/{lead_id}/cancel", response_model=LeadOut)
async def cancel_lead(
    lead_id: UUID,
    payload: LeadTransition | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.LEADS_WRITE)),
):
    payload = payload or LeadTransition()
    return await conversion.cancel_lead(
        db, lead_id, actor=actor, reason=payload.reason, expected_version=payload.expected_version
    )


@router.post(
    "/{lead_id}/conversion-requests",
    response_model=ConversionRequestOut,
    status_code=status.HTTP_201_CREATED,
)
async def submit_conversion_request(
    lead_id: UUID,
    payload: ConversionSubmit,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.CONVERSIONS_SUBMIT)),
):
    data = payload.model_dump()
    if data.get("email") is not None:
        data["email"] = str(data["email"])
    return await conversion.submit_conversion_request(db, lead_id, actor=actor, **data)
