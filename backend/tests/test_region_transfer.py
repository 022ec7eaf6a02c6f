from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from hrm8.core.errors import InvalidStateError, ValidationFailedError
from hrm8.core.ledger import utcnow
from hrm8.models.company import Company
from hrm8.models.consultant import Consultant
from hrm8.models.invoice import Invoice
from hrm8.models.job import Job
from hrm8.models.opportunity import Opportunity
from hrm8.models.region import Region
from hrm8.models.revenue_event import RevenueEvent
from hrm8.models.settlement import Settlement
from hrm8.services import audit
from hrm8.services.region_transfer import preview_impact, transfer_ownership
from hrm8.services.revenue import record_revenue_event


async def _populated_region(factory):
    """
    3 companies, 5 jobs (3 open), 2 consultants, 3 invoices (2 open),
    2 opportunities (1 in flight).
    """
    source = await factory.licensee("Source", share_bps=3000)
    target = await factory.licensee("Target", share_bps=3500)
    region = await factory.region(source, name="Brisbane")

    consultants = [await factory.consultant(f"Consultant {i}", region=region) for i in range(2)]
    companies = [await factory.company(f"Company {i}", owner=consultants[0], region=region) for i in range(3)]

    session = factory.db
    for status in ["OPEN", "OPEN", "OPEN", "FILLED", "CLOSED"]:
        session.add(
            Job(
                company_id=companies[0].id,
                region_id=region.id,
                licensee_id=source.id,
                consultant_id=consultants[1].id,
                title=f"{status.title()} role",
                status=status,
            )
        )
    for status in ["OPEN", "OPEN", "PAID"]:
        session.add(
            Invoice(
                company_id=companies[1].id,
                region_id=region.id,
                licensee_id=source.id,
                amount=12_000,
                status=status,
            )
        )
    session.add(
        Opportunity(
            name="Expansion", company_id=companies[2].id, region_id=region.id, licensee_id=source.id, stage="PROPOSAL"
        )
    )
    session.add(
        Opportunity(
            name="Renewal", company_id=companies[2].id, region_id=region.id, licensee_id=source.id, stage="CLOSED_WON"
        )
    )
    await session.commit()
    return source, target, region, companies


@pytest.mark.asyncio
async def test_preview_counts_what_would_move(db, factory):
    _, _, region, _ = await _populated_region(factory)

    previewed, impact = await preview_impact(db, region.id)
    assert previewed.id == region.id
    assert impact.companies == 3
    assert impact.jobs == 5
    assert impact.open_jobs == 3
    assert impact.consultants == 2
    assert impact.open_invoices == 2
    assert impact.opportunities == 1


@pytest.mark.asyncio
async def test_transfer_moves_region_and_writes_one_audit_entry(db, factory, admin_actor):
    source, target, region, companies = await _populated_region(factory)
    earned = await record_revenue_event(
        db,
        actor=admin_actor,
        source_event_id="before_transfer",
        company_id=companies[0].id,
        event_type="SERVICE_FEE",
        value=5_000,
    )
    event_id = earned.event.id

    result = await transfer_ownership(
        db, region.id, actor=admin_actor, target_licensee_id=target.id, audit_note="licensee restructure"
    )
    assert result.previous_licensee_id == source.id
    assert result.target_licensee_id == target.id
    assert result.region.licensee_id == target.id
    assert (result.impact.companies, result.impact.jobs, result.impact.consultants) == (3, 5, 2)
    assert (result.impact.open_invoices, result.impact.opportunities) == (2, 1)

    async def licensees(model, *conditions):
        rows = (
            await db.execute(select(model).where(*conditions).execution_options(populate_existing=True))
        ).scalars().all()
        return {row.licensee_id for row in rows}

    assert await licensees(Company, Company.region_id == region.id) == {target.id}
    assert await licensees(Job, Job.region_id == region.id) == {target.id}
    assert await licensees(Consultant, Consultant.region_id == region.id) == {target.id}
    assert await licensees(Invoice, Invoice.status == "OPEN") == {target.id}
    # settled history stays where it was earned
    assert await licensees(Invoice, Invoice.status == "PAID") == {source.id}
    assert await licensees(Opportunity, Opportunity.stage == "CLOSED_WON") == {source.id}
    assert await licensees(Opportunity, Opportunity.stage == "PROPOSAL") == {target.id}
    assert (await db.get(RevenueEvent, event_id, populate_existing=True)).licensee_id == source.id

    entries, total = await audit.query(db, entity_type="REGION", entity_id=str(region.id))
    assert total == 1
    entry = entries[0]
    assert entry.action == "TRANSFER"
    assert entry.description == "licensee restructure"
    assert entry.changes["licensee_id"] == [str(source.id), str(target.id)]
    assert entry.changes["companies"] == 3
    assert entry.changes["open_invoices"] == 2


@pytest.mark.asyncio
async def test_pending_settlement_blocks_transfer(db, factory, admin_actor):
    source, target, region, _ = await _populated_region(factory)
    now = utcnow()
    factory.db.add(
        Settlement(
            licensee_id=source.id,
            period_start=now - timedelta(days=5),
            period_end=now + timedelta(days=25),
            total_revenue=0,
            licensee_share=0,
            hrm8_share=0,
            revenue_share_bps=3000,
            status="PENDING",
        )
    )
    await factory.db.commit()

    with pytest.raises(InvalidStateError):
        await transfer_ownership(db, region.id, actor=admin_actor, target_licensee_id=target.id, now=now)

    unchanged = await db.get(Region, region.id, populate_existing=True)
    assert unchanged.licensee_id == source.id
    entries, total = await audit.query(db, entity_type="REGION", entity_id=str(region.id))
    assert total == 0


@pytest.mark.asyncio
async def test_transfer_target_must_be_active_and_different(db, factory, admin_actor):
    source, _, region, _ = await _populated_region(factory)
    dormant = await factory.licensee("Dormant", is_active=False)

    with pytest.raises(ValidationFailedError):
        await transfer_ownership(db, region.id, actor=admin_actor, target_licensee_id=source.id)
    with pytest.raises(ValidationFailedError):
        await transfer_ownership(db, region.id, actor=admin_actor, target_licensee_id=dormant.id)
