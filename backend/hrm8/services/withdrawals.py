# backend/hrm8/services/withdrawals.py
"""
Consultant withdrawals.

A withdrawal claims a set of CONFIRMED commission entries through
withdrawal_claims rows. commission_entry_id is unique there, so of two
concurrent requests naming the same entry exactly one commits; the other gets
AlreadyClaimedError and must refresh its balance before trying again.

Claims are released only by REJECTED or CANCELLED. A payout timeout leaves the
withdrawal PROCESSING with its claims in place, because the transfer may have
gone through; the next execute call re-sends the same idempotency key. A
definitive provider refusal rejects the withdrawal and releases its claims.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.auth.permissions import ROLE_CONSULTANT, ROLE_SALES_AGENT, Actor
from hrm8.core.config import settings
from hrm8.core.errors import (
    AlreadyClaimedError,
    ExternalDependencyError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from hrm8.core.ledger import utcnow
from hrm8.core.payouts import PayoutAccountStatus, PayoutProvider, PayoutRejected, PayoutTimeout
from hrm8.core.states import (
    WITHDRAWAL_TRANSITIONS,
    CommissionStatus,
    WithdrawalStatus,
    ensure_transition,
    parse_status,
)
from hrm8.models.commission_entry import CommissionEntry
from hrm8.models.consultant import Consultant
from hrm8.models.withdrawal import Withdrawal, WithdrawalClaim
from hrm8.services import audit
from hrm8.services.audit import AuditAction, AuditEntity
from hrm8.services.commissions import settle_entry
from hrm8.services.common import commit_or_conflict, get_for_update, get_or_404, transactional

logger = logging.getLogger(__name__)

_CLAIMED_MESSAGE = "One or more commissions are already claimed by another withdrawal; refresh your balance and retry"


@dataclass(frozen=True)
class WithdrawalBalance:
    consultant_id: uuid.UUID
    available_balance: int
    pending_balance: int
    total_earned: int
    total_withdrawn: int
    available_commission_ids: list[uuid.UUID]
    currency: str


def _ensure_owner_or_admin(actor: Actor, consultant_id: uuid.UUID) -> None:
    if actor.is_admin:
        return
    if actor.consultant_id is None or actor.consultant_id != consultant_id:
        raise ForbiddenError("You can only act on your own withdrawals")


async def get_balance(db: AsyncSession, consultant_id: uuid.UUID, *, actor: Actor) -> WithdrawalBalance:
    _ensure_owner_or_admin(actor, consultant_id)
    await get_or_404(db, Consultant, consultant_id, label="Consultant")

    claimed = select(WithdrawalClaim.commission_entry_id)
    available_rows = (
        await db.execute(
            select(CommissionEntry.id, CommissionEntry.amount)
            .where(
                CommissionEntry.consultant_id == consultant_id,
                CommissionEntry.status == CommissionStatus.CONFIRMED.value,
                CommissionEntry.id.not_in(claimed),
            )
            .order_by(CommissionEntry.created_at.asc())
        )
    ).all()

    by_status = dict(
        (
            await db.execute(
                select(CommissionEntry.status, func.coalesce(func.sum(CommissionEntry.amount), 0))
                .where(CommissionEntry.consultant_id == consultant_id)
                .group_by(CommissionEntry.status)
            )
        ).all()
    )
    withdrawn = await db.scalar(
        select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(
            Withdrawal.consultant_id == consultant_id,
            Withdrawal.status == WithdrawalStatus.COMPLETED.value,
        )
    )

    return WithdrawalBalance(
        consultant_id=consultant_id,
        available_balance=sum(int(amount) for _, amount in available_rows),
        pending_balance=int(by_status.get(CommissionStatus.PENDING.value, 0)),
        total_earned=int(by_status.get(CommissionStatus.CONFIRMED.value, 0))
        + int(by_status.get(CommissionStatus.PAID.value, 0)),
        total_withdrawn=int(withdrawn or 0),
        available_commission_ids=[entry_id for entry_id, _ in available_rows],
        currency=settings.DEFAULT_CURRENCY,
    )


async def get_payout_status(
    db: AsyncSession, consultant_id: uuid.UUID, *, actor: Actor, provider: PayoutProvider
) -> PayoutAccountStatus:
    _ensure_owner_or_admin(actor, consultant_id)
    consultant = await get_or_404(db, Consultant, consultant_id, label="Consultant")
    return await provider.account_status(consultant.payout_account_id, consultant.payouts_enabled)


@transactional
async def request_withdrawal(
    db: AsyncSession,
    *,
    actor: Actor,
    consultant_id: uuid.UUID,
    commission_ids: Sequence[uuid.UUID],
    provider: PayoutProvider,
    notes: Optional[str] = None,
) -> Withdrawal:
    _ensure_owner_or_admin(actor, consultant_id)
    if not commission_ids:
        raise ValidationFailedError("commission_ids must not be empty", details={"field": "commission_ids"})
    ids = list(dict.fromkeys(commission_ids))
    if len(ids) != len(commission_ids):
        raise ValidationFailedError("commission_ids contains duplicates", details={"field": "commission_ids"})

    consultant = await get_or_404(db, Consultant, consultant_id, label="Consultant")
    payout = await provider.account_status(consultant.payout_account_id, consultant.payouts_enabled)
    if not payout.payouts_enabled:
        raise ValidationFailedError(
            "Payouts are not enabled for this consultant; finish payout onboarding first",
            details={"onboarding_url": payout.onboarding_url},
        )

    entries = (
        await db.execute(select(CommissionEntry).where(CommissionEntry.id.in_(ids)).with_for_update())
    ).scalars().all()
    found = {e.id: e for e in entries}
    missing = [str(i) for i in ids if i not in found]
    if missing:
        raise NotFoundError("Commission not found", details={"ids": missing})

    foreign = [str(e.id) for e in entries if e.consultant_id != consultant_id]
    if foreign:
        raise ValidationFailedError(
            "Some commissions belong to another consultant",
            details={"ids": foreign},
        )
    not_confirmed = [str(e.id) for e in entries if e.status != CommissionStatus.CONFIRMED.value]
    if not_confirmed:
        raise InvalidStateError(
            "Only CONFIRMED commissions can be withdrawn",
            details={"ids": not_confirmed},
        )

    already = (
        await db.execute(
            select(WithdrawalClaim.commission_entry_id).where(WithdrawalClaim.commission_entry_id.in_(ids))
        )
    ).scalars().all()
    if already:
        logger.warning("withdrawal for %s rejected: commissions already claimed %s", consultant_id, already)
        raise AlreadyClaimedError(_CLAIMED_MESSAGE, details={"ids": [str(i) for i in already]})

    amount = sum(found[i].amount for i in ids)
    if amount <= 0:
        raise ValidationFailedError("Withdrawal amount must be greater than zero", details={"amount": amount})

    withdrawal = Withdrawal(
        consultant_id=consultant_id,
        amount=amount,
        currency=found[ids[0]].currency,
        commission_ids=[str(i) for i in ids],
        status=WithdrawalStatus.PENDING.value,
        notes=notes,
        idempotency_key=f"wd_{uuid.uuid4().hex}",
    )
    try:
        db.add(withdrawal)
        await db.flush()
        db.add_all([WithdrawalClaim(commission_entry_id=i, withdrawal_id=withdrawal.id) for i in ids])
        await db.flush()
        await audit.append(
            db,
            entity_type=AuditEntity.WITHDRAWAL,
            entity_id=withdrawal.id,
            action=AuditAction.REQUEST,
            actor=actor,
            description=notes,
            changes={"amount": amount, "commission_ids": withdrawal.commission_ids},
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.warning("withdrawal for %s lost the claim race on %s", consultant_id, ids)
        raise AlreadyClaimedError(_CLAIMED_MESSAGE, details={"ids": [str(i) for i in ids]}) from exc

    logger.info("withdrawal %s requested by %s for %s", withdrawal.id, consultant_id, amount)
    return withdrawal


async def _release_claims(db: AsyncSession, withdrawal_id: uuid.UUID) -> None:
    await db.execute(delete(WithdrawalClaim).where(WithdrawalClaim.withdrawal_id == withdrawal_id))


async def _claimed_entries(db: AsyncSession, withdrawal_id: uuid.UUID) -> Sequence[CommissionEntry]:
    return (
        await db.execute(
            select(CommissionEntry)
            .join(WithdrawalClaim, WithdrawalClaim.commission_entry_id == CommissionEntry.id)
            .where(WithdrawalClaim.withdrawal_id == withdrawal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalars().all()


async def _transition(
    db: AsyncSession,
    withdrawal: Withdrawal,
    target: WithdrawalStatus,
    *,
    actor: Actor,
    action: AuditAction,
    description: Optional[str] = None,
    extra: Optional[dict] = None,
) -> str:
    previous = withdrawal.status
    ensure_transition(
        WITHDRAWAL_TRANSITIONS,
        WithdrawalStatus(previous),
        target,
        entity="Withdrawal",
        entity_id=withdrawal.id,
    )
    withdrawal.status = target.value
    await audit.append(
        db,
        entity_type=AuditEntity.WITHDRAWAL,
        entity_id=withdrawal.id,
        action=action,
        actor=actor,
        description=description,
        changes={"status": [previous, target.value], **(extra or {})},
    )
    return previous


@transactional
async def approve_withdrawal(
    db: AsyncSession, withdrawal_id: uuid.UUID, *, actor: Actor, admin_notes: Optional[str] = None
) -> Withdrawal:
    withdrawal = await get_for_update(db, Withdrawal, withdrawal_id, label="Withdrawal")
    previous = await _transition(
        db, withdrawal, WithdrawalStatus.APPROVED, actor=actor, action=AuditAction.APPROVE, description=admin_notes
    )
    withdrawal.admin_notes = admin_notes
    await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
    logger.info("withdrawal %s %s -> APPROVED", withdrawal.id, previous)
    return withdrawal


@transactional
async def reject_withdrawal(
    db: AsyncSession,
    withdrawal_id: uuid.UUID,
    *,
    actor: Actor,
    reason: Optional[str],
    admin_notes: Optional[str] = None,
) -> Withdrawal:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailedError("A rejection reason is required", details={"field": "reason"})

    withdrawal = await get_for_update(db, Withdrawal, withdrawal_id, label="Withdrawal")
    if withdrawal.status == WithdrawalStatus.PROCESSING.value:
        # the provider may already hold the transfer; only execute resolves PROCESSING
        raise InvalidStateError(
            "Withdrawal has a payout in flight; execute it again to complete or settle it manually",
            details={"withdrawal_id": str(withdrawal.id), "status": withdrawal.status},
        )
    previous = await _transition(
        db, withdrawal, WithdrawalStatus.REJECTED, actor=actor, action=AuditAction.REJECT, description=reason
    )
    withdrawal.rejection_reason = reason
    withdrawal.admin_notes = admin_notes
    withdrawal.processed_at = utcnow()
    await _release_claims(db, withdrawal.id)
    await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
    logger.info("withdrawal %s %s -> REJECTED, claims released", withdrawal.id, previous)
    return withdrawal


@transactional
async def cancel_withdrawal(db: AsyncSession, withdrawal_id: uuid.UUID, *, actor: Actor) -> Withdrawal:
    withdrawal = await get_for_update(db, Withdrawal, withdrawal_id, label="Withdrawal")
    _ensure_owner_or_admin(actor, withdrawal.consultant_id)
    await _transition(db, withdrawal, WithdrawalStatus.CANCELLED, actor=actor, action=AuditAction.CANCEL)
    await _release_claims(db, withdrawal.id)
    await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
    logger.info("withdrawal %s PENDING -> CANCELLED, claims released", withdrawal.id)
    return withdrawal


async def _complete(
    db: AsyncSession,
    withdrawal: Withdrawal,
    *,
    actor: Actor,
    payment_reference: str,
) -> None:
    entries = await _claimed_entries(db, withdrawal.id)
    for entry in entries:
        settle_entry(entry, payment_reference)
        await audit.append(
            db,
            entity_type=AuditEntity.COMMISSION,
            entity_id=entry.id,
            action=AuditAction.PAY,
            actor=actor,
            description=f"Paid through withdrawal {withdrawal.id}",
            changes={"status": [CommissionStatus.CONFIRMED.value, entry.status], "payment_reference": payment_reference},
        )

    await _transition(
        db,
        withdrawal,
        WithdrawalStatus.COMPLETED,
        actor=actor,
        action=AuditAction.PROCESS,
        extra={"payment_reference": payment_reference, "commissions_paid": len(entries)},
    )
    withdrawal.payment_reference = payment_reference
    withdrawal.processed_at = utcnow()


@transactional
async def process_withdrawal_payment(
    db: AsyncSession,
    withdrawal_id: uuid.UUID,
    *,
    actor: Actor,
    payment_reference: str,
) -> Withdrawal:
    """Record a payment made outside the payout provider (manual bank transfer)."""
    reference = (payment_reference or "").strip()
    if not reference:
        raise ValidationFailedError("payment_reference is required", details={"field": "payment_reference"})

    withdrawal = await get_for_update(db, Withdrawal, withdrawal_id, label="Withdrawal")
    previous = withdrawal.status
    await _complete(db, withdrawal, actor=actor, payment_reference=reference)
    await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
    logger.info("withdrawal %s %s -> COMPLETED (%s)", withdrawal.id, previous, reference)
    return withdrawal


@transactional
async def execute_withdrawal(
    db: AsyncSession,
    withdrawal_id: uuid.UUID,
    *,
    actor: Actor,
    provider: PayoutProvider,
) -> Withdrawal:
    withdrawal = await get_for_update(db, Withdrawal, withdrawal_id, label="Withdrawal")
    _ensure_owner_or_admin(actor, withdrawal.consultant_id)

    if withdrawal.status == WithdrawalStatus.APPROVED.value:
        await _transition(db, withdrawal, WithdrawalStatus.PROCESSING, actor=actor, action=AuditAction.PROCESS)
        # PROCESSING is durable before money moves
        await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
        logger.info("withdrawal %s APPROVED -> PROCESSING", withdrawal.id)
    elif withdrawal.status != WithdrawalStatus.PROCESSING.value:
        raise InvalidStateError(
            f"Withdrawal is {withdrawal.status}; only APPROVED or PROCESSING withdrawals can be paid out",
            details={"withdrawal_id": str(withdrawal.id), "status": withdrawal.status},
        )

    consultant = await get_or_404(db, Consultant, withdrawal.consultant_id, label="Consultant")
    if not consultant.payout_account_id:
        raise ValidationFailedError("Consultant has no payout account", details={"consultant_id": str(consultant.id)})

    transfer = None
    refused: Optional[PayoutRejected] = None
    last_error: Optional[Exception] = None
    for attempt in range(1, settings.PAYOUT_MAX_ATTEMPTS + 1):
        withdrawal.payout_attempts += 1
        try:
            transfer = await provider.create_transfer(
                amount=withdrawal.amount,
                currency=withdrawal.currency,
                destination=consultant.payout_account_id,
                idempotency_key=withdrawal.idempotency_key,
            )
            break
        except PayoutTimeout as exc:
            last_error = exc
            logger.error(
                "payout timeout for withdrawal %s (attempt %d, key %s)",
                withdrawal.id,
                attempt,
                withdrawal.idempotency_key,
            )
        except PayoutRejected as exc:
            refused = exc
            logger.error("payout rejected for withdrawal %s (key %s): %s", withdrawal.id, withdrawal.idempotency_key, exc)
            break

    if refused is not None:
        # no transfer exists, so the entries go back to the consultant's balance
        reason = f"Payout provider refused the transfer: {refused}"
        await _transition(
            db,
            withdrawal,
            WithdrawalStatus.REJECTED,
            actor=actor,
            action=AuditAction.REJECT,
            description=reason,
            extra={"idempotency_key": withdrawal.idempotency_key, "attempts": withdrawal.payout_attempts},
        )
        withdrawal.rejection_reason = reason
        withdrawal.processed_at = utcnow()
        await _release_claims(db, withdrawal.id)
        await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
        logger.info("withdrawal %s PROCESSING -> REJECTED, claims released", withdrawal.id)
        raise ExternalDependencyError(
            "Payout provider refused the transfer; the withdrawal was rejected and its commissions released",
            details={
                "withdrawal_id": str(withdrawal.id),
                "status": withdrawal.status,
                "attempts": withdrawal.payout_attempts,
                "reason": str(refused),
            },
            retryable=False,
        )

    if transfer is None:
        await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
        raise ExternalDependencyError(
            "Payout provider did not confirm the transfer; the withdrawal stays PROCESSING and can be retried",
            details={
                "withdrawal_id": str(withdrawal.id),
                "idempotency_key": withdrawal.idempotency_key,
                "attempts": withdrawal.payout_attempts,
                "reason": str(last_error) if last_error else None,
            },
        )

    # keep the attempt counter before re-reading the row under lock
    await db.flush()
    withdrawal = await get_for_update(db, Withdrawal, withdrawal.id, label="Withdrawal")
    await _complete(db, withdrawal, actor=actor, payment_reference=transfer.transfer_id)
    await commit_or_conflict(db, "Withdrawal was modified concurrently; reload and retry")
    logger.info("withdrawal %s PROCESSING -> COMPLETED (%s)", withdrawal.id, transfer.transfer_id)
    return withdrawal


async def list_withdrawals(
    db: AsyncSession,
    *,
    actor: Actor,
    consultant_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[Sequence[Withdrawal], int]:
    conditions = []
    if actor.role in {ROLE_CONSULTANT, ROLE_SALES_AGENT}:
        conditions.append(Withdrawal.consultant_id == actor.consultant_id)
    if consultant_id:
        conditions.append(Withdrawal.consultant_id == consultant_id)
    if status:
        conditions.append(Withdrawal.status == parse_status(WithdrawalStatus, status).value)

    total = await db.scalar(select(func.count()).select_from(Withdrawal).where(*conditions))
    rows = (
        await db.execute(
            select(Withdrawal).where(*conditions).order_by(Withdrawal.created_at.desc()).limit(limit).offset(offset)
        )
    ).scalars().all()
    return rows, int(total or 0)


async def get_withdrawal(db: AsyncSession, withdrawal_id: uuid.UUID, *, actor: Actor) -> Withdrawal:
    withdrawal = await get_or_404(db, Withdrawal, withdrawal_id, label="Withdrawal")
    _ensure_owner_or_admin(actor, withdrawal.consultant_id)
    return withdrawal
