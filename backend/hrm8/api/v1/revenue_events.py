# backend/hrm8/api/v1/revenue_events.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.db.session import get_db
from hrm8.schemas.commissions import CommissionOut
from hrm8.schemas.revenue import RecordedRevenueOut, RevenueEventCreate, RevenueEventOut
from hrm8.services import revenue

router = APIRouter(prefix="/revenue-events", tags=["revenue"])


@router.post("", response_model=RecordedRevenueOut, status_code=status.HTTP_201_CREATED)
async def record_revenue_event(
    payload: RevenueEventCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.REVENUE_RECORD)),
) -> RecordedRevenueOut:
    """
    Idempotent by source_event_id: a replay answers 200 with the original record.
    """
    result = await revenue.record_revenue_event(
        db,
        actor=actor,
        source_event_id=payload.source_event_id,
        company_id=payload.company_id,
        event_type=payload.event_type,
        value=payload.value,
        currency=payload.currency,
        occurred_at=payload.occurred_at,
        metadata=payload.metadata,
    )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return RecordedRevenueOut(
        event=RevenueEventOut.model_validate(result.event),
        commission=CommissionOut.model_validate(result.commission) if result.commission else None,
        created=result.created,
        locked_attribution=result.locked_attribution,
    )
