# backend/hrm8/api/v1/withdrawals.py
from __future__ import annotations

import uuid
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.deps.permissions import require_permissions
from hrm8.auth.permissions import PERM, Actor
from hrm8.core.payouts import PayoutProvider, get_payout_provider
from hrm8.db.session import get_db
from hrm8.schemas.withdrawals import (
    PayoutStatusOut,
    WithdrawalApprove,
    WithdrawalBalanceOut,
    WithdrawalCreate,
    WithdrawalOut,
    WithdrawalPageOut,
    WithdrawalProcess,
    WithdrawalReject,
)
from hrm8.services import withdrawals

router = APIRouter(prefix="/withdrawals", tags=["withdrawals"])


def _resolve_consultant(actor: Actor, consultant_id: Optional[uuid.UUID]) -> uuid.UUID:
    """
    Admins name the consultant explicitly; everyone else acts as themselves.
    """
    if actor.is_admin and consultant_id is not None:
        return consultant_id
    if actor.consultant_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "consultant_profile_missing", "message": "No consultant profile is linked to you."},
        )
    return actor.consultant_id


@router.get("/balance", response_model=WithdrawalBalanceOut)
async def get_balance(
    consultant_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions([PERM.WITHDRAWALS_REQUEST, PERM.WITHDRAWALS_MANAGE], any_of=True)),
) -> WithdrawalBalanceOut:
    balance = await withdrawals.get_balance(db, _resolve_consultant(actor, consultant_id), actor=actor)
    return WithdrawalBalanceOut(**balance.__dict__)


@router.get("/payout-status", response_model=PayoutStatusOut)
async def get_payout_status(
    consultant_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions([PERM.WITHDRAWALS_REQUEST, PERM.WITHDRAWALS_MANAGE], any_of=True)),
    provider: PayoutProvider = Depends(get_payout_provider),
) -> PayoutStatusOut:
    account = await withdrawals.get_payout_status(
        db, _resolve_consultant(actor, consultant_id), actor=actor, provider=provider
    )
    return PayoutStatusOut(payouts_enabled=account.payouts_enabled, onboarding_url=account.onboarding_url)


@router.post("", response_model=WithdrawalOut, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    payload: WithdrawalCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions([PERM.WITHDRAWALS_REQUEST, PERM.WITHDRAWALS_MANAGE], any_of=True)),
    provider: PayoutProvider = Depends(get_payout_provider),
):
    """
    Body: {"commission_ids": ["..."], "notes": "..."}
    Each commission can back at most one live withdrawal; a lost race answers 409.
    """
    return await withdrawals.request_withdrawal(
        db,
        actor=actor,
        consultant_id=_resolve_consultant(actor, payload.consultant_id),
        commission_ids=payload.commission_ids,
        provider=provider,
        notes=payload.notes,
    )


@router.get("", response_model=WithdrawalPageOut)
async def list_withdrawals(
    consultant_id: Optional[UUID] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions([PERM.WITHDRAWALS_REQUEST, PERM.WITHDRAWALS_MANAGE], any_of=True)),
) -> WithdrawalPageOut:
    rows, total = await withdrawals.list_withdrawals(
        db, actor=actor, consultant_id=consultant_id, status=status_filter, limit=limit, offset=offset
    )
    return WithdrawalPageOut(
        items=[WithdrawalOut.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{withdrawal_id}", response_model=WithdrawalOut)
async def get_withdrawal(
    withdrawal_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions([PERM.WITHDRAWALS_REQUEST, PERM.WITHDRAWALS_MANAGE], any_of=True)),
):
    return await withdrawals.get_withdrawal(db, withdrawal_id, actor=actor)


@router.post("/{withdrawal_id}/cancel", response_model=WithdrawalOut)
async def cancel_withdrawal(
    withdrawal_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions([PERM.WITHDRAWALS_REQUEST, PERM.WITHDRAWALS_MANAGE], any_of=True)),
):
    return await withdrawals.cancel_withdrawal(db, withdrawal_id, actor=actor)


@router.post("/{withdrawal_id}/execute", response_model=WithdrawalOut)
async def execute_withdrawal(
    withdrawal_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions([PERM.WITHDRAWALS_REQUEST, PERM.WITHDRAWALS_MANAGE], any_of=True)),
    provider: PayoutProvider = Depends(get_payout_provider),
):
    """
    Pushes an APPROVED withdrawal through the payout provider. Safe to call again
    after a provider timeout; the transfer is keyed by the withdrawal.
    """
    return await withdrawals.execute_withdrawal(db, withdrawal_id, actor=actor, provider=provider)


# --- admin ---


@router.post("/{withdrawal_id}/approve", response_model=WithdrawalOut)
async def approve_withdrawal(
    withdrawal_id: UUID,
    payload: WithdrawalApprove | None = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.WITHDRAWALS_MANAGE)),
):
    return await withdrawals.approve_withdrawal(
        db, withdrawal_id, actor=actor, admin_notes=payload.admin_notes if payload else None
    )


@router.post("/{withdrawal_id}/reject", response_model=WithdrawalOut)
async def reject_withdrawal(
    withdrawal_id: UUID,
    payload: WithdrawalReject,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.WITHDRAWALS_MANAGE)),
):
    return await withdrawals.reject_withdrawal(
        db, withdrawal_id, actor=actor, reason=payload.reason, admin_notes=payload.admin_notes
    )


@router.post("/{withdrawal_id}/process", response_model=WithdrawalOut)
async def process_withdrawal_payment(
    withdrawal_id: UUID,
    payload: WithdrawalProcess,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permissions(PERM.WITHDRAWALS_MANAGE)),
):
    """
    Records a payment made outside the provider (bank transfer etc.).
    """
    return await withdrawals.process_withdrawal_payment(
        db, withdrawal_id, actor=actor, payment_reference=payload.payment_reference
    )
