from __future__ import annotations

import pytest
from sqlalchemy import update

from hrm8.models.audit_log import AuditLogEntry
from hrm8.services import audit
from hrm8.services.conversion import cancel_lead, create_lead, qualify_lead

from conftest import agent_actor


async def _lead_with_history(db, factory):
    agent = await factory.consultant("Agent")
    actor = agent_actor(agent)
    lead = await create_lead(db, actor=actor, company_name="Chain Co", email="chain@co.test", country="NZ")
    await qualify_lead(db, lead.id, actor=actor)
    await cancel_lead(db, lead.id, actor=actor, reason="budget frozen")
    return lead


@pytest.mark.asyncio
async def test_chain_links_every_entry(db, factory):
    lead = await _lead_with_history(db, factory)

    entries, total = await audit.query(db, entity_type="lead", entity_id=str(lead.id))
    assert total == 3
    ordered = sorted(entries, key=lambda e: e.sequence)
    assert [e.action for e in ordered] == ["CREATE", "QUALIFY", "CANCEL"]
    assert [e.sequence for e in ordered] == [1, 2, 3]
    assert ordered[0].prev_hash is None
    assert ordered[1].prev_hash == ordered[0].entry_hash
    assert ordered[2].prev_hash == ordered[1].entry_hash
    assert all(e.entry_hash.startswith("sha256:") for e in ordered)
    assert ordered[2].description == "budget frozen"

    check = await audit.verify_chain(db, entity_type="LEAD", entity_id=str(lead.id))
    assert check.valid is True
    assert check.entries == 3
    assert check.broken_at_sequence is None


@pytest.mark.asyncio
async def test_tampering_is_detected(db, factory):
    lead_id = str((await _lead_with_history(db, factory)).id)

    await db.execute(
        update(AuditLogEntry)
        .where(AuditLogEntry.entity_id == lead_id, AuditLogEntry.sequence == 2)
        .values(description="nothing to see here")
    )
    await db.commit()
    db.expire_all()

    check = await audit.verify_chain(db, entity_type="LEAD", entity_id=lead_id)
    assert check.valid is False
    assert check.broken_at_sequence == 2


@pytest.mark.asyncio
async def test_query_filters_and_stats(db, factory):
    lead = await _lead_with_history(db, factory)

    cancels, total = await audit.query(db, action="cancel")
    assert total == 1
    assert cancels[0].entity_id == str(lead.id)

    page, total = await audit.query(db, entity_type="LEAD", limit=1, offset=1)
    assert total == 3
    assert len(page) == 1

    stats = await audit.stats(db)
    assert stats.total_logs == 3
    assert stats.today_logs == 3
    assert sorted(stats.top_actions) == [("CANCEL", 1), ("CREATE", 1), ("QUALIFY", 1)]
