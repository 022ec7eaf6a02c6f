from __future__ import annotations

import pytest

from hrm8.auth.permissions import ROLE_CONSULTANT, ROLE_GLOBAL_ADMIN, ROLE_SALES_AGENT

from conftest import STAFF_PASSWORD, auth_headers


async def _login(client, email: str, password: str):
    return await client.post("/api/v1/auth/login", json={"email": email, "password": password})


async def _staff(factory):
    agent = await factory.consultant("Agent", rate_bps=1000)
    agent_user = await factory.staff_user(ROLE_SALES_AGENT, email="agent@hrm8.com", consultant=agent)
    admin_user = await factory.staff_user(ROLE_GLOBAL_ADMIN, email="admin@hrm8.com")
    return agent, auth_headers(agent_user), auth_headers(admin_user)


async def _submitted_request(client, agent_headers, company_name="Acme", email="owner@acme.com"):
    r = await client.post(
        "/api/v1/leads",
        json={"company_name": company_name, "email": email, "country": "au"},
        headers=agent_headers,
    )
    assert r.status_code == 201, r.text
    lead = r.json()

    r = await client.post(
        f"/api/v1/leads/{lead['id']}/conversion-requests",
        json={"agent_notes": "ready to sign"},
        headers=agent_headers,
    )
    assert r.status_code == 201, r.text
    return lead, r.json()


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_login_and_me(client, factory):
    await factory.staff_user(ROLE_GLOBAL_ADMIN, email="root@hrm8.com")

    r = await _login(client, "ROOT@hrm8.com", STAFF_PASSWORD)
    assert r.status_code == 200, r.text
    token = r.json()["access_token"]
    assert r.json()["must_change_password"] is False

    r = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert r.json()["email"] == "root@hrm8.com"
    assert r.json()["role"] == ROLE_GLOBAL_ADMIN

    r = await _login(client, "root@hrm8.com", "wrong-password")
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_missing_token_is_rejected(client):
    r = await client.get("/api/v1/leads")
    assert r.status_code in (401, 403)


@pytest.mark.asyncio
async def test_conversion_flow_over_http(client, factory, notifier):
    agent, agent_headers, admin_headers = await _staff(factory)
    lead, request = await _submitted_request(client, agent_headers)
    assert lead["agent_id"] == str(agent.id)
    assert lead["country"] == "AU"
    assert request["status"] == "PENDING"

    # agents submit but never decide
    r = await client.post(
        f"/api/v1/conversion-requests/{request['id']}/approve", json={}, headers=agent_headers
    )
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "rbac_forbidden"

    r = await client.post(
        f"/api/v1/conversion-requests/{request['id']}/approve",
        json={"temp_password": "Temp123!", "admin_notes": "welcome aboard"},
        headers=admin_headers,
    )
    assert r.status_code == 200, r.text
    approval = r.json()
    assert approval["credential"] == {"email": "owner@acme.com", "temp_password": "Temp123!"}
    assert approval["request"]["status"] == "CONVERTED"
    assert approval["company"]["attribution_owner_id"] == str(agent.id)
    assert approval["company"]["attribution_status"] == "OPEN"
    assert notifier.credentials[0]["temp_password"] == "Temp123!"

    # the password is shown once and never again
    r = await client.get(f"/api/v1/conversion-requests/{request['id']}", headers=admin_headers)
    assert r.status_code == 200
    assert "temp_password" not in r.text
    assert "Temp123!" not in r.text

    r = await client.get(f"/api/v1/leads/{lead['id']}", headers=agent_headers)
    assert r.status_code == 200
    detail = r.json()
    assert detail["status"] == "CONVERTED"
    assert detail["approval_state"] == "CONVERTED"
    assert "Temp123!" not in r.text

    r = await client.post(
        f"/api/v1/conversion-requests/{request['id']}/approve", json={}, headers=admin_headers
    )
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "invalid_transition"

    # the new company admin must rotate the one-time password
    r = await _login(client, "owner@acme.com", "Temp123!")
    assert r.status_code == 200, r.text
    assert r.json()["must_change_password"] is True
    company_headers = {"Authorization": f"Bearer {r.json()['access_token']}"}

    r = await client.post(
        "/api/v1/auth/change-password",
        json={"current_password": "Temp123!", "new_password": "N3w-Passw0rd!"},
        headers=company_headers,
    )
    assert r.status_code == 204

    r = await _login(client, "owner@acme.com", "N3w-Passw0rd!")
    assert r.status_code == 200
    assert r.json()["must_change_password"] is False
    assert (await _login(client, "owner@acme.com", "Temp123!")).status_code == 401

    # company users hold no platform role
    r = await client.get("/api/v1/leads", headers=company_headers)
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "membership_missing"


@pytest.mark.asyncio
async def test_decline_errors_over_http(client, factory):
    _, agent_headers, admin_headers = await _staff(factory)
    lead, request = await _submitted_request(client, agent_headers, company_name="Globex", email="ceo@globex.com")

    r = await client.post(
        f"/api/v1/conversion-requests/{request['id']}/decline",
        json={"decline_reason": "   "},
        headers=admin_headers,
    )
    assert r.status_code == 422
    body = r.json()["detail"]
    assert body["code"] == "validation_failed"
    assert body["retryable"] is False

    r = await client.post(
        f"/api/v1/conversion-requests/{request['id']}/decline",
        json={"decline_reason": "Existing customer"},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json()["request"]["status"] == "DECLINED"

    r = await client.get(f"/api/v1/leads/{lead['id']}", headers=agent_headers)
    assert r.json()["status"] == "NEW"
    assert r.json()["approval_state"] == "DECLINED"

    r = await client.post(f"/api/v1/leads/{lead['id']}/conversion-requests", json={}, headers=agent_headers)
    assert r.status_code == 201
    r = await client.post(f"/api/v1/leads/{lead['id']}/conversion-requests", json={}, headers=agent_headers)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "invalid_state"


@pytest.mark.asyncio
async def test_revenue_intake_is_idempotent_over_http(client, factory):
    _, _, admin_headers = await _staff(factory)
    owner = await factory.consultant("Owner", rate_bps=1000)
    company = await factory.company("Initech", owner=owner)
    payload = {
        "source_event_id": "stripe_in_001",
        "company_id": str(company.id),
        "event_type": "SUBSCRIPTION",
        "value": 25_000,
    }

    r = await client.post("/api/v1/revenue-events", json=payload, headers=admin_headers)
    assert r.status_code == 201, r.text
    first = r.json()
    assert first["created"] is True
    assert first["locked_attribution"] is True
    assert first["commission"]["amount"] == 2_500

    r = await client.post("/api/v1/revenue-events", json=payload, headers=admin_headers)
    assert r.status_code == 200
    replay = r.json()
    assert replay["created"] is False
    assert replay["event"]["id"] == first["event"]["id"]
    assert replay["commission"]["id"] == first["commission"]["id"]

    r = await client.get(f"/api/v1/companies/{company.id}/attribution", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["attribution_status"] == "LOCKED"


@pytest.mark.asyncio
async def test_consultant_sees_only_own_commissions(client, factory):
    mine = await factory.consultant("Me")
    theirs = await factory.consultant("Them")
    company = await factory.company("Hooli")
    own = await factory.commission(mine, company, amount=1_200)
    await factory.commission(theirs, company, amount=9_900)
    user = await factory.staff_user(ROLE_CONSULTANT, email="me@hrm8.com", consultant=mine)
    headers = auth_headers(user)

    r = await client.get("/api/v1/commissions", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["total"] == 1
    assert body["items"][0]["id"] == str(own.id)

    r = await client.get("/api/v1/withdrawals/balance", headers=headers)
    assert r.status_code == 200
    assert r.json()["available_balance"] == 1_200

    r = await client.post(
        "/api/v1/commissions/pay", json={"commission_ids": [str(own.id)], "payment_reference": "X"}, headers=headers
    )
    assert r.status_code == 403
