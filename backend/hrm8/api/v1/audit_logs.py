# backend/hrm8/api/v1/audit_logs.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.db.session import get_db
from hrm8.schemas.audit import AuditLogOut, AuditLogPageOut, AuditStatsOut, ChainVerificationOut, TopActionOut
from hrm8.services import audit

router = APIRouter(prefix="/audit-logs", tags=["audit"])


@router.get("", response_model=AuditLogPageOut)
async def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.AUDIT_READ)),
) -> AuditLogPageOut:
    rows, total = await audit.query(
        db, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit, offset=offset
    )
    return AuditLogPageOut(
        items=[AuditLogOut.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=AuditStatsOut)
async def audit_stats(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.AUDIT_READ)),
) -> AuditStatsOut:
    result = await audit.stats(db)
    return AuditStatsOut(
        total_logs=result.total_logs,
        today_logs=result.today_logs,
        top_actions=[TopActionOut(action=a, count=n) for a, n in result.top_actions],
    )


@router.get("/verify", response_model=ChainVerificationOut)
async def verify_audit_chain(
    entity_type: str,
    entity_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.AUDIT_READ)),
) -> ChainVerificationOut:
    result = await audit.verify_chain(db, entity_type=entity_type, entity_id=entity_id)
    return ChainVerificationOut(**result.__dict__)
