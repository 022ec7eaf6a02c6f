from __future__ import annotations

import os
import tempfile
import uuid
from datetime import datetime
from typing import Optional

# Settings are read at import time; point them at a throwaway SQLite file first.
_DB_DIR = tempfile.mkdtemp(prefix="hrm8-tests-")
os.environ["DATABASE_URL_ASYNC"] = f"sqlite+aiosqlite:///{_DB_DIR}/hrm8.db"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ENVIRONMENT"] = "test"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import NullPool

from hrm8.auth.permissions import (
    ROLE_CONSULTANT,
    ROLE_GLOBAL_ADMIN,
    ROLE_REGIONAL_ADMIN,
    ROLE_SALES_AGENT,
    Actor,
)
from hrm8.core.notifications import NotificationError, get_notifier
from hrm8.core.payouts import LocalPayoutProvider, get_payout_provider
from hrm8.core.security import create_access_token, hash_password
from hrm8.db.session import build_engine, build_sessionmaker, get_db

# Ensure Base + models are registered before create_all
from hrm8.db.base import Base
import hrm8.models  # noqa: F401
from hrm8.models.commission_entry import CommissionEntry
from hrm8.models.company import Company
from hrm8.models.consultant import Consultant
from hrm8.models.lead import Lead
from hrm8.models.licensee import Licensee
from hrm8.models.platform_membership import PlatformMembership
from hrm8.models.region import Region
from hrm8.models.user import User

STAFF_PASSWORD = "Password123!"


# ---------------------------------------------------------
# Engine + schema lifecycle
# ---------------------------------------------------------
@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def engine():
    engine = build_engine(os.environ["DATABASE_URL_ASYNC"], poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="session")
def sessionmaker(engine):
    return build_sessionmaker(engine)


# ---------------------------------------------------------
# Clean tables before every DB-backed test
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def clean_tables(engine):
    """
    Each test starts from empty tables. Children first, so foreign keys never
    point at a deleted row.
    """
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(delete(table))
    yield


# ---------------------------------------------------------
# DB session for setup, service calls and assertions
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def db(sessionmaker, clean_tables):
    async with sessionmaker() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------
# Capabilities
# ---------------------------------------------------------
class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.credentials: list[dict] = []
        self.declines: list[dict] = []

    async def send_company_credentials(self, *, email: str, company_name: str, temp_password: str) -> None:
        if self.fail:
            raise NotificationError("smtp unavailable")
        self.credentials.append({"email": email, "company_name": company_name, "temp_password": temp_password})

    async def send_conversion_declined(self, *, email: str, company_name: str, reason: str) -> None:
        if self.fail:
            raise NotificationError("smtp unavailable")
        self.declines.append({"email": email, "company_name": company_name, "reason": reason})


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def payouts() -> LocalPayoutProvider:
    return LocalPayoutProvider()


# ---------------------------------------------------------
# Actors (service-level tests)
# ---------------------------------------------------------
@pytest.fixture()
def admin_actor() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ROLE_GLOBAL_ADMIN, ip_address="127.0.0.1")


def agent_actor(consultant: Consultant) -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ROLE_SALES_AGENT, consultant_id=consultant.id)


def consultant_actor(consultant: Consultant) -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ROLE_CONSULTANT, consultant_id=consultant.id)


def regional_actor(licensee: Licensee) -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ROLE_REGIONAL_ADMIN, licensee_id=licensee.id)


# ---------------------------------------------------------
# Row factory
# ---------------------------------------------------------
class Factory:
    def __init__(self, session: AsyncSession) -> None:
        self.db = session

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def licensee(self, name: str = "Licensee", *, share_bps: int = 4000, is_active: bool = True) -> Licensee:
        return await self._save(
            Licensee(
                name=name,
                email=f"{uuid.uuid4().hex[:8]}@licensee.test",
                revenue_share_bps=share_bps,
                is_active=is_active,
            )
        )

    async def region(self, licensee: Optional[Licensee] = None, name: Optional[str] = None) -> Region:
        return await self._save(
            Region(
                name=name or f"Region {uuid.uuid4().hex[:6]}",
                country="AU",
                licensee_id=licensee.id if licensee else None,
            )
        )

    async def consultant(
        self,
        name: str = "Consultant",
        *,
        region: Optional[Region] = None,
        rate_bps: int = 1000,
        payouts_enabled: bool = False,
        role: str = "SALES_AGENT",
    ) -> Consultant:
        return await self._save(
            Consultant(
                name=name,
                email=f"{uuid.uuid4().hex[:8]}@consultants.test",
                role=role,
                region_id=region.id if region else None,
                licensee_id=region.licensee_id if region else None,
                commission_rate_bps=rate_bps,
                payout_account_id=f"acct_{uuid.uuid4().hex[:12]}" if payouts_enabled else None,
                payouts_enabled=payouts_enabled,
            )
        )

    async def lead(self, company_name: str = "Lead Co", *, agent: Optional[Consultant] = None, region=None) -> Lead:
        return await self._save(
            Lead(
                company_name=company_name,
                email=f"{uuid.uuid4().hex[:8]}@lead.test",
                country="AU",
                status="NEW",
                agent_id=agent.id if agent else None,
                region_id=region.id if region else None,
            )
        )

    async def company(
        self,
        name: Optional[str] = None,
        *,
        owner: Optional[Consultant] = None,
        region: Optional[Region] = None,
        status: str = "OPEN",
        locked_until: Optional[datetime] = None,
    ) -> Company:
        name = name or f"Company {uuid.uuid4().hex[:6]}"
        return await self._save(
            Company(
                name=name,
                name_key=Company.make_name_key(name),
                country="AU",
                region_id=region.id if region else None,
                licensee_id=region.licensee_id if region else None,
                attribution_owner_id=owner.id if owner else None,
                attribution_status=status,
                locked_until=locked_until,
            )
        )

    async def commission(
        self,
        consultant: Consultant,
        company: Company,
        *,
        amount: int = 1000,
        status: str = "CONFIRMED",
    ) -> CommissionEntry:
        return await self._save(
            CommissionEntry(
                consultant_id=consultant.id,
                company_id=company.id,
                region_id=company.region_id,
                source_event_id=f"evt_{uuid.uuid4().hex}",
                commission_type="PLACEMENT",
                base_value=amount * 10,
                rate_bps=1000,
                amount=amount,
                currency="USD",
                status=status,
            )
        )

    async def staff_user(
        self,
        role: str,
        *,
        email: Optional[str] = None,
        licensee: Optional[Licensee] = None,
        consultant: Optional[Consultant] = None,
    ) -> User:
        user = User(
            email=email or f"{uuid.uuid4().hex[:8]}@staff.test",
            full_name=role.title(),
            password_hash=hash_password(STAFF_PASSWORD),
        )
        self.db.add(user)
        await self.db.flush()
        self.db.add(
            PlatformMembership(
                user_id=user.id,
                role=role,
                licensee_id=licensee.id if licensee else None,
                consultant_id=consultant.id if consultant else None,
                permissions=[],
            )
        )
        await self.db.commit()
        return user


@pytest_asyncio.fixture()
async def factory(sessionmaker, clean_tables):
    # own session, so a rollback inside a service call never expires setup rows
    async with sessionmaker() as session:
        yield Factory(session)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(subject=str(user.id))}"}


# ---------------------------------------------------------
# FastAPI app + dependency override
# ---------------------------------------------------------
@pytest.fixture()
def app(sessionmaker, clean_tables, notifier, payouts):
    from hrm8.main import app as fastapi_app

    async def _override_get_db():
        async with sessionmaker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    fastapi_app.dependency_overrides[get_payout_provider] = lambda: payouts
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


# ---------------------------------------------------------
# HTTP client
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
    ) as ac:
        yield ac
