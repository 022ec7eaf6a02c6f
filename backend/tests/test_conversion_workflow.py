from __future__ import annotations

import asyncio
import random

import pytest
from sqlalchemy import func, select

from hrm8.core.errors import (
    ConflictError,
    EngineError,
    InvalidStateError,
    InvalidTransitionError,
    ValidationFailedError,
)
from hrm8.core.security import verify_password
from hrm8.models.company import Company
from hrm8.models.conversion_request import ConversionRequest
from hrm8.models.lead import Lead
from hrm8.models.user import User
from hrm8.services import audit
from hrm8.services.conversion import (
    approve_conversion_request,
    cancel_conversion_request,
    cancel_lead,
    create_lead,
    decline_conversion_request,
    effective_approval_state,
    get_lead,
    qualify_lead,
    submit_conversion_request,
)

from conftest import RecordingNotifier, agent_actor


async def _pending_count(db, lead_id) -> int:
    return int(
        await db.scalar(
            select(func.count())
            .select_from(ConversionRequest)
            .where(ConversionRequest.lead_id == lead_id, ConversionRequest.status == "PENDING")
        )
    )


@pytest.mark.asyncio
async def test_create_lead_is_audited(db, factory):
    agent = await factory.consultant("Agent")
    lead = await create_lead(
        db,
        actor=agent_actor(agent),
        company_name="  Globex  ",
        email="Owner@Globex.com",
        country="au",
    )
    assert lead.status == "NEW"
    assert lead.company_name == "Globex"
    assert lead.email == "owner@globex.com"
    assert lead.country == "AU"
    assert lead.agent_id == agent.id

    rows, total = await audit.query(db, entity_type="LEAD", entity_id=str(lead.id))
    assert total == 1
    assert rows[0].action == "CREATE"


@pytest.mark.asyncio
async def test_create_lead_rejects_bad_country(db, factory):
    agent = await factory.consultant("Agent")
    with pytest.raises(ValidationFailedError):
        await create_lead(db, actor=agent_actor(agent), company_name="X", email="x@x.com", country="AUS")


@pytest.mark.asyncio
async def test_approval_creates_company_and_one_time_credential(db, factory, admin_actor, notifier):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Acme", agent=agent)

    request = await submit_conversion_request(db, lead.id, actor=agent_actor(agent), agent_notes="hot lead")
    assert request.status == "PENDING"

    result = await approve_conversion_request(
        db, request.id, actor=admin_actor, notifier=notifier, temp_password="Temp123!"
    )

    assert result.credential.temp_password == "Temp123!"
    assert result.credential.email == lead.email
    assert result.request.status == "CONVERTED"
    assert result.request.company_id == result.company.id
    assert result.company.name == "Acme"
    assert result.company.attribution_owner_id == agent.id
    assert result.company.attribution_status == "OPEN"
    assert result.warnings == []

    # only the hash is stored, and it verifies
    stored = await db.get(ConversionRequest, request.id, populate_existing=True)
    assert stored.temp_password_hash != "Temp123!"
    assert verify_password("Temp123!", stored.temp_password_hash)

    admin_user = await db.scalar(select(User).where(User.email == lead.email))
    assert admin_user.company_id == result.company.id
    assert admin_user.must_change_password is True
    assert verify_password("Temp123!", admin_user.password_hash)

    converted, requests = await get_lead(db, lead.id, actor=admin_actor)
    assert converted.status == "CONVERTED"
    assert effective_approval_state(requests) == "CONVERTED"

    assert notifier.credentials == [{"email": lead.email, "company_name": "Acme", "temp_password": "Temp123!"}]

    actions = [
        e.action
        for e in (await audit.query(db, entity_type="CONVERSION_REQUEST", entity_id=str(request.id)))[0]
    ]
    assert sorted(actions) == ["APPROVE", "SUBMIT"]


@pytest.mark.asyncio
async def test_generated_temp_password_meets_policy(db, factory, admin_actor, notifier):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Initech", agent=agent)
    request = await submit_conversion_request(db, lead.id, actor=agent_actor(agent))

    result = await approve_conversion_request(db, request.id, actor=admin_actor, notifier=notifier)
    password = result.credential.temp_password
    assert len(password) == 12
    assert any(c.isupper() for c in password)
    assert any(c.islower() for c in password)
    assert any(c.isdigit() for c in password)


@pytest.mark.asyncio
async def test_second_approval_is_invalid_transition(db, factory, admin_actor, notifier):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Acme", agent=agent)
    request = await submit_conversion_request(db, lead.id, actor=agent_actor(agent))
    request_id = request.id
    await approve_conversion_request(db, request_id, actor=admin_actor, notifier=notifier, temp_password="Temp123!")

    with pytest.raises(InvalidTransitionError):
        await approve_conversion_request(db, request_id, actor=admin_actor, notifier=notifier)

    assert await db.scalar(select(func.count()).select_from(Company)) == 1


@pytest.mark.asyncio
async def test_decline_requires_reason_and_allows_resubmission(db, factory, admin_actor, notifier):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Hooli", agent=agent)
    actor = agent_actor(agent)
    request = await submit_conversion_request(db, lead.id, actor=actor)
    request_id = request.id

    with pytest.raises(ValidationFailedError):
        await decline_conversion_request(db, request_id, actor=admin_actor, notifier=notifier, decline_reason="   ")

    declined = await decline_conversion_request(
        db, request_id, actor=admin_actor, notifier=notifier, decline_reason="Duplicate of an existing client"
    )
    assert declined.request.status == "DECLINED"
    assert declined.request.decline_reason == "Duplicate of an existing client"
    assert notifier.declines[0]["reason"] == "Duplicate of an existing client"

    current, requests = await get_lead(db, lead.id, actor=admin_actor)
    assert current.status == "NEW"
    assert effective_approval_state(requests) == "DECLINED"

    again = await submit_conversion_request(db, lead.id, actor=actor, agent_notes="now with a signed LOI")
    assert again.status == "PENDING"
    _, requests = await get_lead(db, lead.id, actor=admin_actor)
    assert [r.status for r in requests] == ["DECLINED", "PENDING"]
    assert effective_approval_state(requests) == "PENDING"


@pytest.mark.asyncio
async def test_only_one_pending_request_per_lead(db, factory):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Pied Piper", agent=agent)
    actor = agent_actor(agent)
    await submit_conversion_request(db, lead.id, actor=actor)

    with pytest.raises(InvalidStateError) as exc:
        await submit_conversion_request(db, lead.id, actor=actor)
    assert exc.value.code == "invalid_state"
    assert await _pending_count(db, lead.id) == 1


@pytest.mark.asyncio
async def test_cancelled_lead_cannot_be_converted(db, factory, admin_actor):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Vandelay", agent=agent)
    actor = agent_actor(agent)
    await submit_conversion_request(db, lead.id, actor=actor)

    cancelled = await cancel_lead(db, lead.id, actor=admin_actor, reason="went with a competitor")
    assert cancelled.status == "CANCELLED"
    assert await _pending_count(db, lead.id) == 0

    with pytest.raises(InvalidStateError):
        await submit_conversion_request(db, lead.id, actor=actor)


@pytest.mark.asyncio
async def test_qualify_then_convert(db, factory, admin_actor, notifier):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Umbrella", agent=agent)
    qualified = await qualify_lead(db, lead.id, actor=agent_actor(agent))
    assert qualified.status == "QUALIFIED"

    with pytest.raises(InvalidTransitionError):
        await qualify_lead(db, lead.id, actor=agent_actor(agent))

    request = await submit_conversion_request(db, lead.id, actor=agent_actor(agent))
    result = await approve_conversion_request(db, request.id, actor=admin_actor, notifier=notifier)
    assert result.request.status == "CONVERTED"


@pytest.mark.asyncio
async def test_company_name_collision_keeps_request_pending(db, factory, admin_actor, notifier):
    agent = await factory.consultant("Agent")
    await factory.company("Acme  Pty")
    lead = await factory.lead("acme pty", agent=agent)
    request = await submit_conversion_request(db, lead.id, actor=agent_actor(agent))
    request_id = request.id

    with pytest.raises(ConflictError) as exc:
        await approve_conversion_request(db, request_id, actor=admin_actor, notifier=notifier)
    assert exc.value.retryable is True

    stored = await db.get(ConversionRequest, request_id, populate_existing=True)
    assert stored.status == "PENDING"
    assert stored.temp_password_hash is None
    stored_lead = await db.get(Lead, lead.id, populate_existing=True)
    assert stored_lead.status == "NEW"
    assert await db.scalar(select(func.count()).select_from(User)) == 0
    assert notifier.credentials == []


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_approval(db, factory, admin_actor):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Soylent", agent=agent)
    request = await submit_conversion_request(db, lead.id, actor=agent_actor(agent))

    result = await approve_conversion_request(
        db, request.id, actor=admin_actor, notifier=RecordingNotifier(fail=True), temp_password="Temp123!"
    )
    assert result.request.status == "CONVERTED"
    assert len(result.warnings) == 1
    assert "Credential email" in result.warnings[0]
    assert await db.scalar(select(func.count()).select_from(Company)) == 1


@pytest.mark.asyncio
async def test_cancel_request_by_other_agent_is_forbidden(db, factory):
    owner = await factory.consultant("Owner")
    other = await factory.consultant("Other")
    lead = await factory.lead("Wonka", agent=owner)
    request = await submit_conversion_request(db, lead.id, actor=agent_actor(owner))
    request_id = request.id

    with pytest.raises(EngineError) as exc:
        await cancel_conversion_request(db, request_id, actor=agent_actor(other))
    assert exc.value.status_code == 403

    cancelled = await cancel_conversion_request(db, request_id, actor=agent_actor(owner))
    assert cancelled.status == "CANCELLED"


@pytest.mark.asyncio
async def test_random_interleavings_never_leave_two_pending(db, factory, admin_actor, notifier):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Stark", agent=agent)
    lead_id = lead.id
    actor = agent_actor(agent)
    rng = random.Random(42)

    for _ in range(40):
        op = rng.choice(["submit", "submit", "decline", "cancel"])
        latest = await db.scalar(
            select(ConversionRequest.id)
            .where(ConversionRequest.lead_id == lead_id)
            .order_by(ConversionRequest.created_at.desc(), ConversionRequest.id.desc())
            .limit(1)
        )
        try:
            if op == "submit":
                await submit_conversion_request(db, lead_id, actor=actor)
            elif latest is not None and op == "decline":
                await decline_conversion_request(db, latest, actor=admin_actor, notifier=notifier, decline_reason="no")
            elif latest is not None:
                await cancel_conversion_request(db, latest, actor=actor)
        except (InvalidStateError, InvalidTransitionError):
            pass
        assert await _pending_count(db, lead_id) <= 1


@pytest.mark.asyncio
async def test_concurrent_submissions_admit_exactly_one(sessionmaker, factory):
    agent = await factory.consultant("Agent")
    lead = await factory.lead("Cyberdyne", agent=agent)
    actor = agent_actor(agent)

    async def submit():
        async with sessionmaker() as session:
            return await submit_conversion_request(session, lead.id, actor=actor)

    results = await asyncio.gather(submit(), submit(), return_exceptions=True)

    created = [r for r in results if isinstance(r, ConversionRequest)]
    rejected = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(created) == 1
    assert len(rejected) == 1

    async with sessionmaker() as session:
        assert await _pending_count(session, lead.id) == 1
