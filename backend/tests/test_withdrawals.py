from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from hrm8.core.errors import (
    AlreadyClaimedError,
    ExternalDependencyError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    ValidationFailedError,
)
from hrm8.core.payouts import LocalPayoutProvider, PayoutRejected, PayoutTimeout
from hrm8.models.commission_entry import CommissionEntry
from hrm8.models.withdrawal import Withdrawal, WithdrawalClaim
from hrm8.services.commissions import mark_commission_paid
from hrm8.services.withdrawals import (
    approve_withdrawal,
    cancel_withdrawal,
    execute_withdrawal,
    get_balance,
    get_payout_status,
    process_withdrawal_payment,
    reject_withdrawal,
    request_withdrawal,
)

from conftest import consultant_actor


class FlakyPayoutProvider(LocalPayoutProvider):
    """Times out `failures` times, then behaves like the local provider."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls: list[str] = []

    async def create_transfer(self, *, amount, currency, destination, idempotency_key):
        self.calls.append(idempotency_key)
        if self.failures > 0:
            self.failures -= 1
            raise PayoutTimeout("provider timed out")
        return await super().create_transfer(
            amount=amount, currency=currency, destination=destination, idempotency_key=idempotency_key
        )


class RefusingPayoutProvider(LocalPayoutProvider):
    async def create_transfer(self, *, amount, currency, destination, idempotency_key):
        raise PayoutRejected("destination account closed")


async def _earnings(factory, *, payouts_enabled=True):
    consultant = await factory.consultant("Earner", payouts_enabled=payouts_enabled)
    company = await factory.company()
    first = await factory.commission(consultant, company, amount=1_000)
    second = await factory.commission(consultant, company, amount=2_500)
    return consultant, company, [first, second]


@pytest.mark.asyncio
async def test_balance_counts_only_unclaimed_confirmed_entries(db, factory):
    consultant, company, entries = await _earnings(factory)
    await factory.commission(consultant, company, amount=700, status="PENDING")
    await factory.commission(consultant, company, amount=300, status="PAID")

    balance = await get_balance(db, consultant.id, actor=consultant_actor(consultant))
    assert balance.available_balance == 3_500
    assert balance.pending_balance == 700
    assert balance.total_earned == 3_800
    assert balance.total_withdrawn == 0
    assert set(balance.available_commission_ids) == {e.id for e in entries}


@pytest.mark.asyncio
async def test_request_claims_entries_once(db, factory, payouts):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    ids = [e.id for e in entries]

    withdrawal = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=ids, provider=payouts, notes="March"
    )
    assert withdrawal.status == "PENDING"
    assert withdrawal.amount == 3_500
    assert sorted(withdrawal.commission_ids) == sorted(str(i) for i in ids)

    balance = await get_balance(db, consultant.id, actor=actor)
    assert balance.available_balance == 0

    with pytest.raises(AlreadyClaimedError) as exc:
        await request_withdrawal(
            db, actor=actor, consultant_id=consultant.id, commission_ids=[ids[0]], provider=payouts
        )
    assert exc.value.retryable is True
    assert exc.value.to_detail()["code"] == "already_claimed"


@pytest.mark.asyncio
async def test_request_validation(db, factory, payouts):
    consultant, company, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    pending = await factory.commission(consultant, company, status="PENDING")

    with pytest.raises(ValidationFailedError):
        await request_withdrawal(db, actor=actor, consultant_id=consultant.id, commission_ids=[], provider=payouts)
    with pytest.raises(ValidationFailedError):
        await request_withdrawal(
            db,
            actor=actor,
            consultant_id=consultant.id,
            commission_ids=[entries[0].id, entries[0].id],
            provider=payouts,
        )
    with pytest.raises(InvalidStateError):
        await request_withdrawal(
            db, actor=actor, consultant_id=consultant.id, commission_ids=[pending.id], provider=payouts
        )


@pytest.mark.asyncio
async def test_concurrent_requests_claim_each_entry_once(sessionmaker, factory, payouts):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    ids = [e.id for e in entries]

    async def attempt():
        async with sessionmaker() as session:
            return await request_withdrawal(
                session, actor=actor, consultant_id=consultant.id, commission_ids=ids, provider=payouts
            )

    results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)
    won = [r for r in results if isinstance(r, Withdrawal)]
    lost = [r for r in results if isinstance(r, AlreadyClaimedError)]
    assert len(won) == 1
    assert len(lost) == 1

    async with sessionmaker() as session:
        assert await session.scalar(select(func.count()).select_from(Withdrawal)) == 1
        assert await session.scalar(select(func.count()).select_from(WithdrawalClaim)) == 2


@pytest.mark.asyncio
async def test_reject_requires_reason_and_releases_claims(db, factory, admin_actor, payouts):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    ids = [e.id for e in entries]
    withdrawal = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=ids, provider=payouts
    )
    withdrawal_id = withdrawal.id

    with pytest.raises(ValidationFailedError):
        await reject_withdrawal(db, withdrawal_id, actor=admin_actor, reason=" ")

    rejected = await reject_withdrawal(db, withdrawal_id, actor=admin_actor, reason="bank details mismatch")
    assert rejected.status == "REJECTED"
    assert rejected.rejection_reason == "bank details mismatch"

    balance = await get_balance(db, consultant.id, actor=actor)
    assert balance.available_balance == 3_500

    again = await request_withdrawal(db, actor=actor, consultant_id=consultant.id, commission_ids=ids, provider=payouts)
    assert again.status == "PENDING"

    with pytest.raises(InvalidTransitionError):
        await approve_withdrawal(db, withdrawal_id, actor=admin_actor)


@pytest.mark.asyncio
async def test_cancel_by_owner_releases_claims(db, factory, payouts):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    withdrawal = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=[entries[0].id], provider=payouts
    )

    cancelled = await cancel_withdrawal(db, withdrawal.id, actor=actor)
    assert cancelled.status == "CANCELLED"
    assert (await get_balance(db, consultant.id, actor=actor)).available_balance == 3_500


@pytest.mark.asyncio
async def test_payouts_must_be_enabled(db, factory, payouts):
    consultant, _, entries = await _earnings(factory, payouts_enabled=False)
    actor = consultant_actor(consultant)

    status = await get_payout_status(db, consultant.id, actor=actor, provider=payouts)
    assert status.payouts_enabled is False

    with pytest.raises(ValidationFailedError) as exc:
        await request_withdrawal(
            db, actor=actor, consultant_id=consultant.id, commission_ids=[entries[0].id], provider=payouts
        )
    assert exc.value.details["onboarding_url"] == status.onboarding_url


@pytest.mark.asyncio
async def test_execute_pays_out_and_settles_entries(db, factory, admin_actor, payouts):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    withdrawal = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=[e.id for e in entries], provider=payouts
    )
    await approve_withdrawal(db, withdrawal.id, actor=admin_actor, admin_notes="ok")

    done = await execute_withdrawal(db, withdrawal.id, actor=admin_actor, provider=payouts)
    assert done.status == "COMPLETED"
    assert done.payment_reference.startswith("tr_")
    assert done.payout_attempts == 1
    assert payouts.transfer_count == 1

    paid = (
        await db.execute(
            select(CommissionEntry)
            .where(CommissionEntry.id.in_([e.id for e in entries]))
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    assert {e.status for e in paid} == {"PAID"}
    assert {e.payment_reference for e in paid} == {done.payment_reference}

    balance = await get_balance(db, consultant.id, actor=actor)
    assert balance.total_withdrawn == 3_500
    assert balance.available_balance == 0


@pytest.mark.asyncio
async def test_payout_timeout_keeps_withdrawal_processing(db, factory, admin_actor):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    provider = FlakyPayoutProvider(failures=3)
    withdrawal = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=[e.id for e in entries], provider=provider
    )
    withdrawal_id = withdrawal.id
    await approve_withdrawal(db, withdrawal_id, actor=admin_actor)

    with pytest.raises(ExternalDependencyError) as exc:
        await execute_withdrawal(db, withdrawal_id, actor=admin_actor, provider=provider)
    assert exc.value.retryable is True
    assert exc.value.details["attempts"] == 3

    stuck = await db.get(Withdrawal, withdrawal_id, populate_existing=True)
    assert stuck.status == "PROCESSING"
    assert stuck.payout_attempts == 3
    # the transfer may exist, so the claims stay
    assert (await get_balance(db, consultant.id, actor=actor)).available_balance == 0
    with pytest.raises(InvalidStateError):
        await reject_withdrawal(db, withdrawal_id, actor=admin_actor, reason="giving up")

    done = await execute_withdrawal(db, withdrawal_id, actor=admin_actor, provider=provider)
    assert done.status == "COMPLETED"
    assert done.payout_attempts == 4
    assert provider.transfer_count == 1
    # every attempt reused one idempotency key
    assert len(set(provider.calls)) == 1


@pytest.mark.asyncio
async def test_manual_payment_completes_approved_withdrawal(db, factory, admin_actor, payouts):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    withdrawal = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=[entries[1].id], provider=payouts
    )
    withdrawal_id = withdrawal.id

    with pytest.raises(InvalidTransitionError):
        await process_withdrawal_payment(db, withdrawal_id, actor=admin_actor, payment_reference="WIRE-1")

    await approve_withdrawal(db, withdrawal_id, actor=admin_actor)
    done = await process_withdrawal_payment(db, withdrawal_id, actor=admin_actor, payment_reference="WIRE-1")
    assert done.status == "COMPLETED"
    assert done.payment_reference == "WIRE-1"


@pytest.mark.asyncio
async def test_other_consultants_are_forbidden(db, factory, payouts):
    consultant, _, entries = await _earnings(factory)
    intruder = await factory.consultant("Intruder", payouts_enabled=True)
    actor = consultant_actor(intruder)

    with pytest.raises(ForbiddenError):
        await get_balance(db, consultant.id, actor=actor)
    with pytest.raises(ForbiddenError):
        await request_withdrawal(
            db, actor=actor, consultant_id=consultant.id, commission_ids=[entries[0].id], provider=payouts
        )
    with pytest.raises(ValidationFailedError):
        await request_withdrawal(
            db, actor=actor, consultant_id=intruder.id, commission_ids=[entries[0].id], provider=payouts
        )


@pytest.mark.asyncio
async def test_claimed_entry_cannot_be_paid_directly(db, factory, admin_actor, payouts):
    consultant, _, entries = await _earnings(factory)
    await request_withdrawal(
        db,
        actor=consultant_actor(consultant),
        consultant_id=consultant.id,
        commission_ids=[entries[0].id],
        provider=payouts,
    )

    with pytest.raises(InvalidStateError):
        await mark_commission_paid(db, entries[0].id, actor=admin_actor, payment_reference="DIRECT")

    paid = await mark_commission_paid(db, entries[1].id, actor=admin_actor, payment_reference="DIRECT")
    assert paid.status == "PAID"


@pytest.mark.asyncio
async def test_provider_refusal_rejects_and_releases_claims(db, factory, admin_actor):
    consultant, _, entries = await _earnings(factory)
    actor = consultant_actor(consultant)
    ids = [e.id for e in entries]
    provider = RefusingPayoutProvider()
    withdrawal = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=ids, provider=provider
    )
    withdrawal_id = withdrawal.id
    await approve_withdrawal(db, withdrawal_id, actor=admin_actor)

    with pytest.raises(ExternalDependencyError) as exc:
        await execute_withdrawal(db, withdrawal_id, actor=admin_actor, provider=provider)
    assert exc.value.retryable is False
    assert exc.value.details["status"] == "REJECTED"

    refused = await db.get(Withdrawal, withdrawal_id, populate_existing=True)
    assert refused.status == "REJECTED"
    assert "destination account closed" in refused.rejection_reason
    assert await db.scalar(select(func.count()).select_from(WithdrawalClaim)) == 0
    assert (await get_balance(db, consultant.id, actor=actor)).available_balance == 3_500

    with pytest.raises(InvalidStateError):
        await execute_withdrawal(db, withdrawal_id, actor=admin_actor, provider=provider)

    retry = await request_withdrawal(
        db, actor=actor, consultant_id=consultant.id, commission_ids=ids, provider=LocalPayoutProvider()
    )
    assert retry.status == "PENDING"
