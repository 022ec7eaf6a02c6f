from __future__ import annotations

from datetime import datetime, timezone

import pytest

from hrm8.core.errors import (
    DuplicatePeriodError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    ValidationFailedError,
)
from hrm8.services.commissions import confirm_commission
from hrm8.services.revenue import record_revenue_event
from hrm8.services.settlements import (
    generate_settlement,
    list_settlements,
    mark_settlement_paid,
    settlement_stats,
)

from conftest import regional_actor

JAN = datetime(2026, 1, 1, tzinfo=timezone.utc)
FEB = datetime(2026, 2, 1, tzinfo=timezone.utc)
MAR = datetime(2026, 3, 1, tzinfo=timezone.utc)


async def _territory(factory, share_bps=4000):
    licensee = await factory.licensee("Pacific", share_bps=share_bps)
    region = await factory.region(licensee, name="Sydney")
    return licensee, region


async def _revenue(db, actor, company, source, value, occurred_at, event_type="SERVICE_FEE"):
    return await record_revenue_event(
        db,
        actor=actor,
        source_event_id=source,
        company_id=company.id,
        event_type=event_type,
        value=value,
        occurred_at=occurred_at,
    )


@pytest.mark.asyncio
async def test_settlement_covers_closed_open_period(db, factory, admin_actor):
    licensee, region = await _territory(factory)
    company = await factory.company("Ownerless Co", region=region)

    await _revenue(db, admin_actor, company, "e1", 10_001, JAN)
    await _revenue(db, admin_actor, company, "e2", 20_000, datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc))
    await _revenue(db, admin_actor, company, "e3", 50_000, FEB)

    generated = await generate_settlement(
        db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB
    )
    settlement = generated.settlement
    assert generated.replaced is False
    assert settlement.status == "PENDING"
    assert settlement.event_count == 2
    assert settlement.total_revenue == 30_001
    assert settlement.licensee_share == 12_000
    assert settlement.hrm8_share == 18_001
    assert settlement.licensee_share + settlement.hrm8_share == settlement.total_revenue
    assert settlement.revenue_share_bps == 4000


@pytest.mark.asyncio
async def test_pending_commissions_are_left_for_a_later_run(db, factory, admin_actor):
    licensee, region = await _territory(factory)
    owner = await factory.consultant("Owner", region=region)
    company = await factory.company("Owned Co", owner=owner, region=region)

    recorded = await _revenue(db, admin_actor, company, "sub_1", 10_000, JAN, event_type="SUBSCRIPTION")
    commission_id = recorded.commission.id

    first = await generate_settlement(db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB)
    assert first.settlement.total_revenue == 0
    assert first.settlement.event_count == 0
    settlement_id = first.settlement.id

    await confirm_commission(db, commission_id, actor=admin_actor)

    again = await generate_settlement(db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB)
    assert again.replaced is True
    assert again.settlement.id == settlement_id
    assert again.settlement.total_revenue == 10_000
    assert again.settlement.licensee_share == 4_000

    rows, total = await list_settlements(db, actor=admin_actor, licensee_id=licensee.id)
    assert total == 1


@pytest.mark.asyncio
async def test_paid_or_overlapping_periods_are_rejected(db, factory, admin_actor):
    licensee, region = await _territory(factory)
    company = await factory.company("Ledger Co", region=region)
    await _revenue(db, admin_actor, company, "e1", 1_000, JAN)

    generated = await generate_settlement(
        db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB
    )
    settlement_id = generated.settlement.id

    paid = await mark_settlement_paid(db, settlement_id, actor=admin_actor, payment_reference="REMIT-1")
    assert paid.status == "PAID"
    assert paid.payment_date is not None

    with pytest.raises(InvalidTransitionError):
        await mark_settlement_paid(db, settlement_id, actor=admin_actor)

    with pytest.raises(DuplicatePeriodError) as exc:
        await generate_settlement(db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB)
    assert exc.value.details["settlement_id"] == str(settlement_id)

    with pytest.raises(DuplicatePeriodError):
        await generate_settlement(
            db,
            actor=admin_actor,
            licensee_id=licensee.id,
            period_start=datetime(2026, 1, 15, tzinfo=timezone.utc),
            period_end=datetime(2026, 2, 15, tzinfo=timezone.utc),
        )

    # adjacent periods share a boundary without overlapping
    february = await generate_settlement(
        db, actor=admin_actor, licensee_id=licensee.id, period_start=FEB, period_end=MAR
    )
    assert february.replaced is False


@pytest.mark.asyncio
async def test_period_and_region_validation(db, factory, admin_actor):
    licensee, _ = await _territory(factory)
    other = await factory.licensee("Atlantic")
    foreign_region = await factory.region(other, name="Lisbon")

    with pytest.raises(ValidationFailedError):
        await generate_settlement(db, actor=admin_actor, licensee_id=licensee.id, period_start=FEB, period_end=JAN)

    with pytest.raises(ValidationFailedError):
        await generate_settlement(
            db,
            actor=admin_actor,
            licensee_id=licensee.id,
            period_start=JAN,
            period_end=FEB,
            region_id=foreign_region.id,
        )


@pytest.mark.asyncio
async def test_regional_admin_is_confined_to_own_licensee(db, factory, admin_actor):
    licensee, _ = await _territory(factory)
    other = await factory.licensee("Atlantic")

    with pytest.raises(ForbiddenError):
        await generate_settlement(
            db, actor=regional_actor(other), licensee_id=licensee.id, period_start=JAN, period_end=FEB
        )

    own = await generate_settlement(
        db, actor=regional_actor(licensee), licensee_id=licensee.id, period_start=JAN, period_end=FEB
    )
    rows, total = await list_settlements(db, actor=regional_actor(other))
    assert total == 0
    rows, total = await list_settlements(db, actor=regional_actor(licensee))
    assert [s.id for s in rows] == [own.settlement.id]


@pytest.mark.asyncio
async def test_stats_split_pending_and_paid(db, factory, admin_actor):
    licensee, region = await _territory(factory, share_bps=5000)
    company = await factory.company("Stats Co", region=region)
    await _revenue(db, admin_actor, company, "jan", 10_000, datetime(2026, 1, 10, tzinfo=timezone.utc))
    await _revenue(db, admin_actor, company, "feb", 3_000, datetime(2026, 2, 10, tzinfo=timezone.utc))

    january = await generate_settlement(
        db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB
    )
    await mark_settlement_paid(db, january.settlement.id, actor=admin_actor, payment_reference="REMIT-JAN")
    await generate_settlement(db, actor=admin_actor, licensee_id=licensee.id, period_start=FEB, period_end=MAR)

    stats = await settlement_stats(
        db, actor=admin_actor, licensee_id=licensee.id, now=datetime(2026, 2, 20, tzinfo=timezone.utc)
    )
    assert stats.paid_count == 1
    assert stats.total_paid == 5_000
    assert stats.pending_count == 1
    assert stats.total_pending == 1_500
    assert stats.current_period_revenue == 3_000


@pytest.mark.asyncio
async def test_period_cannot_close_over_unconfirmed_revenue(db, factory, admin_actor):
    licensee, region = await _territory(factory)
    owner = await factory.consultant("Owner", region=region)
    company = await factory.company("Late Confirm Co", owner=owner, region=region)

    recorded = await _revenue(
        db, admin_actor, company, "sub_jan", 10_000, datetime(2026, 1, 10, tzinfo=timezone.utc), "SUBSCRIPTION"
    )
    event_id = recorded.event.id
    commission_id = recorded.commission.id

    january = await generate_settlement(
        db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB
    )
    settlement_id = january.settlement.id
    assert january.settlement.total_revenue == 0

    with pytest.raises(InvalidStateError) as exc:
        await mark_settlement_paid(db, settlement_id, actor=admin_actor, payment_reference="REMIT-JAN")
    assert exc.value.details["revenue_event_ids"] == [str(event_id)]

    await confirm_commission(db, commission_id, actor=admin_actor)

    # the stored totals predate the confirmation
    with pytest.raises(InvalidStateError):
        await mark_settlement_paid(db, settlement_id, actor=admin_actor, payment_reference="REMIT-JAN")

    january = await generate_settlement(
        db, actor=admin_actor, licensee_id=licensee.id, period_start=JAN, period_end=FEB
    )
    assert january.settlement.total_revenue == 10_000
    paid = await mark_settlement_paid(db, settlement_id, actor=admin_actor, payment_reference="REMIT-JAN")
    assert paid.status == "PAID"

    february = await generate_settlement(
        db, actor=admin_actor, licensee_id=licensee.id, period_start=FEB, period_end=MAR
    )
    assert paid.total_revenue + february.settlement.total_revenue == 10_000
