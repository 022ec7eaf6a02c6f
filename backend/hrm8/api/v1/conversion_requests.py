# backend/hrm8/api/v1/conversion_requests.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.core.notifications import Notifier, get_notifier
from hrm8.db.session import get_db
from hrm8.schemas.conversions import (
    ApprovalOut,
    CompanySummaryOut,
    ConversionApprove,
    ConversionCancel,
    ConversionDecline,
    ConversionRequestListOut,
    ConversionRequestOut,
    CredentialOut,
    DeclineOut,
)
from hrm8.services import conversion

router = APIRouter(prefix="/conversion-requests", tags=["conversion-requests"])


@router.get("", response_model=ConversionRequestListOut)
async def list_conversion_requests(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    lead_id: Optional[UUID] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.CONVERSIONS_READ)),
) -> ConversionRequestListOut:
    rows, total = await conversion.list_conversion_requests(
        db, actor=actor, status=status_filter, lead_id=lead_id, limit=limit, offset=offset
    )
    return ConversionRequestListOut(
        items=[ConversionRequestOut.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{request_id}", response_model=ConversionRequestOut)
async def get_conversion_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.CONVERSIONS_READ)),
):
    return await conversion.get_conversion_request(db, request_id, actor=actor)


@router.post("/{request_id}/approve", response_model=ApprovalOut)
async def approve_conversion_request(
    request_id: UUID,
    payload: ConversionApprove,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.CONVERSIONS_DECIDE)),
    notifier: Notifier = Depends(get_notifier),
) -> ApprovalOut:
    """
    The only response that ever carries the temporary password.
    """
    result = await conversion.approve_conversion_request(
        db,
        request_id,
        actor=actor,
        notifier=notifier,
        temp_password=payload.temp_password,
        admin_notes=payload.admin_notes,
        expected_version=payload.expected_version,
    )
    return ApprovalOut(
        request=ConversionRequestOut.model_validate(result.request),
        company=CompanySummaryOut.model_validate(result.company),
        credential=CredentialOut(email=result.credential.email, temp_password=result.credential.temp_password),
        warnings=result.warnings,
    )


@router.post("/{request_id}/decline", response_model=DeclineOut)
async def decline_conversion_request(
    request_id: UUID,
    payload: ConversionDecline,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.CONVERSIONS_DECIDE)),
    notifier: Notifier = Depends(get_notifier),
) -> DeclineOut:
    result = await conversion.decline_conversion_request(
        db,
        request_id,
        actor=actor,
        notifier=notifier,
        decline_reason=payload.decline_reason,
        admin_notes=payload.admin_notes,
        expected_version=payload.expected_version,
    )
    return DeclineOut(request=ConversionRequestOut.model_validate(result.request), warnings=result.warnings)


@router.post("/{request_id}/cancel", response_model=ConversionRequestOut)
async def cancel_conversion_request(
    request_id: UUID,
    payload: ConversionCancel | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.CONVERSIONS_SUBMIT)),
):
    expected = payload.expected_version if payload else None
    return await conversion.cancel_conversion_request(db, request_id, actor=actor, expected_version=expected)
