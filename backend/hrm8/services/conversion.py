# backend/hrm8/services/conversion.py
"""
Lead pipeline and the conversion-request approval workflow.

Approval is a single transaction: the request walks PENDING -> APPROVED ->
CONVERTED, the Company and its admin user are created, the lead becomes
CONVERTED and the audit entries are appended. Any failure rolls all of it back,
so the request is left PENDING and the caller gets a retryable ConflictError.

The plaintext temporary password only ever lives in the ApprovalResult returned
from approve_conversion_request(); the database keeps the bcrypt hash.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.auth.permissions import ROLE_REGIONAL_ADMIN, ROLE_SALES_AGENT, Actor
from hrm8.core.errors import ConflictError, ForbiddenError, InvalidStateError, ValidationFailedError
from hrm8.core.ledger import utcnow
from hrm8.core.notifications import NotificationError, Notifier
from hrm8.core.security import generate_temp_password, hash_password
from hrm8.core.states import (
    CONVERSION_TRANSITIONS,
    LEAD_TRANSITIONS,
    AttributionStatus,
    ConversionStatus,
    LeadStatus,
    ensure_transition,
    parse_status,
)
from hrm8.models.company import Company
from hrm8.models.conversion_request import ConversionRequest
from hrm8.models.lead import Lead
from hrm8.models.region import Region
from hrm8.models.user import User
from hrm8.services import audit
from hrm8.services.audit import AuditAction, AuditEntity
from hrm8.services.common import (
    check_version,
    commit_or_conflict,
    ensure_licensee_scope,
    flush_or_conflict,
    get_for_update,
    get_or_404,
    transactional,
)

logger = logging.getLogger(__name__)

TEMP_PASSWORD_MIN = 8
TEMP_PASSWORD_MAX = 72  # bcrypt ignores bytes beyond 72


@dataclass(frozen=True)
class Credential:
    email: str
    temp_password: str


@dataclass
class ApprovalResult:
    request: ConversionRequest
    company: Company
    admin_user: User
    credential: Credential
    warnings: list[str] = field(default_factory=list)


@dataclass
class DeclineResult:
    request: ConversionRequest
    warnings: list[str] = field(default_factory=list)


def _required_text(value: Optional[str], field_name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationFailedError(f"{field_name} is required", details={"field": field_name})
    return cleaned


def _country_code(value: Optional[str]) -> str:
    code = _required_text(value, "country").upper()
    if len(code) != 2 or not code.isalpha():
        raise ValidationFailedError("country must be an ISO 3166-1 alpha-2 code", details={"field": "country"})
    return code


async def _lead_licensee_id(db: AsyncSession, lead: Lead) -> Optional[uuid.UUID]:
    if lead.region_id is None:
        return None
    region = await db.get(Region, lead.region_id)
    return region.licensee_id if region else None


async def _ensure_lead_access(db: AsyncSession, actor: Actor, lead: Lead) -> None:
    if actor.role == ROLE_SALES_AGENT:
        if lead.agent_id is not None and lead.agent_id != actor.consultant_id:
            raise ForbiddenError("This lead belongs to another agent")
    elif actor.role == ROLE_REGIONAL_ADMIN:
        ensure_licensee_scope(actor, await _lead_licensee_id(db, lead))


# -----------------------------
# Leads
# -----------------------------
@transactional
async def create_lead(
    db: AsyncSession,
    *,
    actor: Actor,
    company_name: str,
    email: str,
    country: str,
    phone: Optional[str] = None,
    website: Optional[str] = None,
    budget: Optional[str] = None,
    timeline: Optional[str] = None,
    message: Optional[str] = None,
    region_id: Optional[uuid.UUID] = None,
    agent_id: Optional[uuid.UUID] = None,
) -> Lead:
    if region_id is not None:
        await get_or_404(db, Region, region_id, label="Region")

    lead = Lead(
        company_name=_required_text(company_name, "company_name"),
        email=User.normalize_email(_required_text(email, "email")),
        country=_country_code(country),
        phone=phone,
        website=website,
        budget=budget,
        timeline=timeline,
        message=message,
        region_id=region_id,
        agent_id=agent_id or actor.consultant_id,
        status=LeadStatus.NEW.value,
    )
    db.add(lead)
    await db.flush()

    await audit.append(
        db,
        entity_type=AuditEntity.LEAD,
        entity_id=lead.id,
        action=AuditAction.CREATE,
        actor=actor,
        description=f"Lead created for {lead.company_name}",
        changes={"status": lead.status, "email": lead.email},
    )
    await db.commit()
    logger.info("lead %s created (%s)", lead.id, lead.company_name)
    return lead


async def list_leads(
    db: AsyncSession,
    *,
    actor: Actor,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[Sequence[Lead], int]:
    conditions = []
    if status:
        conditions.append(Lead.status == parse_status(LeadStatus, status).value)
    if actor.role == ROLE_SALES_AGENT:
        conditions.append(Lead.agent_id == actor.consultant_id)
    elif actor.role == ROLE_REGIONAL_ADMIN:
        conditions.append(Lead.region_id.in_(select(Region.id).where(Region.licensee_id == actor.licensee_id)))

    total = await db.scalar(select(func.count()).select_from(Lead).where(*conditions))
    rows = (
        await db.execute(
            select(Lead).where(*conditions).order_by(Lead.created_at.desc()).limit(limit).offset(offset)
        )
    ).scalars().all()
    return rows, int(total or 0)


async def get_lead(db: AsyncSession, lead_id: uuid.UUID, *, actor: Actor) -> tuple[Lead, list[ConversionRequest]]:
    lead = await get_or_404(db, Lead, lead_id, label="Lead")
    await _ensure_lead_access(db, actor, lead)
    return lead, await requests_for_lead(db, lead.id)


async def requests_for_lead(db: AsyncSession, lead_id: uuid.UUID) -> list[ConversionRequest]:
    """Insertion order, oldest first."""
    rows = (
        await db.execute(
            select(ConversionRequest)
            .where(ConversionRequest.lead_id == lead_id)
            .order_by(ConversionRequest.created_at.asc(), ConversionRequest.id.asc())
        )
    ).scalars().all()
    return list(rows)


def effective_approval_state(requests: Sequence[ConversionRequest]) -> Optional[str]:
    """The most recent request decides where the lead stands."""
    if not requests:
        return None
    return requests[-1].status


@transactional
async def qualify_lead(
    db: AsyncSession, lead_id: uuid.UUID, *, actor: Actor, expected_version: Optional[int] = None
) -> Lead:
    lead = await get_for_update(db, Lead, lead_id, label="Lead")
    check_version(lead, expected_version, label="Lead")
    await _ensure_lead_access(db, actor, lead)
    ensure_transition(LEAD_TRANSITIONS, LeadStatus(lead.status), LeadStatus.QUALIFIED, entity="Lead", entity_id=lead.id)

    previous = lead.status
    lead.status = LeadStatus.QUALIFIED.value
    await audit.append(
        db,
        entity_type=AuditEntity.LEAD,
        entity_id=lead.id,
        action=AuditAction.QUALIFY,
        actor=actor,
        changes={"status": [previous, lead.status]},
    )
    await commit_or_conflict(db, "Lead was modified concurrently; reload and retry")
    logger.info("lead %s %s -> %s", lead.id, previous, lead.status)
    return lead


@transactional
async def cancel_lead(
    db: AsyncSession,
    lead_id: uuid.UUID,
    *,
    actor: Actor,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Lead:
    lead = await get_for_update(db, Lead, lead_id, label="Lead")
    check_version(lead, expected_version, label="Lead")
    await _ensure_lead_access(db, actor, lead)
    ensure_transition(LEAD_TRANSITIONS, LeadStatus(lead.status), LeadStatus.CANCELLED, entity="Lead", entity_id=lead.id)

    pending = (
        await db.execute(
            select(ConversionRequest)
            .where(
                ConversionRequest.lead_id == lead.id,
                ConversionRequest.status == ConversionStatus.PENDING.value,
            )
            .with_for_update()
        )
    ).scalars().all()
    for request in pending:
        request.status = ConversionStatus.CANCELLED.value
        await audit.append(
            db,
            entity_type=AuditEntity.CONVERSION_REQUEST,
            entity_id=request.id,
            action=AuditAction.CANCEL,
            actor=actor,
            description="Cancelled together with its lead",
            changes={"status": [ConversionStatus.PENDING.value, ConversionStatus.CANCELLED.value]},
        )

    previous = lead.status
    lead.status = LeadStatus.CANCELLED.value
    await audit.append(
        db,
        entity_type=AuditEntity.LEAD,
        entity_id=lead.id,
        action=AuditAction.CANCEL,
        actor=actor,
        description=reason,
        changes={"status": [previous, lead.status], "cancelled_requests": len(pending)},
    )
    await commit_or_conflict(db, "Lead was modified concurrently; reload and retry")
    logger.info("lead %s %s -> %s", lead.id, previous, lead.status)
    return lead


# -----------------------------
# Conversion requests
# -----------------------------
@transactional
async def submit_conversion_request(
    db: AsyncSession,
    lead_id: uuid.UUID,
    *,
    actor: Actor,
    agent_notes: Optional[str] = None,
    domain: Optional[str] = None,
    email: Optional[str] = None,
    company_name: Optional[str] = None,
    country: Optional[str] = None,
) -> ConversionRequest:
    lead = await get_for_update(db, Lead, lead_id, label="Lead")
    await _ensure_lead_access(db, actor, lead)

    if lead.status not in {LeadStatus.NEW.value, LeadStatus.QUALIFIED.value}:
        raise InvalidStateError(
            f"Lead is {lead.status}; only NEW or QUALIFIED leads can be converted",
            details={"lead_id": str(lead.id), "status": lead.status},
        )

    pending_id = await db.scalar(
        select(ConversionRequest.id).where(
            ConversionRequest.lead_id == lead.id,
            ConversionRequest.status == ConversionStatus.PENDING.value,
        )
    )
    if pending_id is not None:
        logger.warning("lead %s already has pending conversion request %s", lead.id, pending_id)
        raise InvalidStateError(
            "A conversion request is already pending for this lead",
            details={"lead_id": str(lead.id), "pending_request_id": str(pending_id)},
        )

    request = ConversionRequest(
        lead_id=lead.id,
        agent_id=actor.consultant_id or lead.agent_id,
        email=User.normalize_email(email or lead.email),
        company_name=_required_text(company_name or lead.company_name, "company_name"),
        country=_country_code(country or lead.country),
        domain=domain,
        agent_notes=agent_notes,
        status=ConversionStatus.PENDING.value,
    )
    db.add(request)
    try:
        await db.flush()
    except IntegrityError as exc:
        # partial unique index: a concurrent submit won
        await db.rollback()
        raise InvalidStateError(
            "A conversion request is already pending for this lead",
            details={"lead_id": str(lead_id)},
        ) from exc

    await audit.append(
        db,
        entity_type=AuditEntity.CONVERSION_REQUEST,
        entity_id=request.id,
        action=AuditAction.SUBMIT,
        actor=actor,
        description=f"Conversion requested for {request.company_name}",
        changes={"lead_id": str(lead.id), "status": request.status},
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise InvalidStateError(
            "A conversion request is already pending for this lead",
            details={"lead_id": str(lead_id)},
        ) from exc
    logger.info("conversion request %s submitted for lead %s", request.id, lead.id)
    return request


async def list_conversion_requests(
    db: AsyncSession,
    *,
    actor: Actor,
    status: Optional[str] = None,
    lead_id: Optional[uuid.UUID] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[Sequence[ConversionRequest], int]:
    conditions = []
    if status:
        conditions.append(ConversionRequest.status == parse_status(ConversionStatus, status).value)
    if lead_id:
        conditions.append(ConversionRequest.lead_id == lead_id)
    if actor.role == ROLE_SALES_AGENT:
        conditions.append(ConversionRequest.agent_id == actor.consultant_id)
    elif actor.role == ROLE_REGIONAL_ADMIN:
        conditions.append(
            ConversionRequest.lead_id.in_(
                select(Lead.id).join(Region, Region.id == Lead.region_id).where(Region.licensee_id == actor.licensee_id)
            )
        )

    total = await db.scalar(select(func.count()).select_from(ConversionRequest).where(*conditions))
    rows = (
        await db.execute(
            select(ConversionRequest)
            .where(*conditions)
            .order_by(ConversionRequest.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return rows, int(total or 0)


async def get_conversion_request(db: AsyncSession, request_id: uuid.UUID, *, actor: Actor) -> ConversionRequest:
    request = await get_or_404(db, ConversionRequest, request_id, label="Conversion request")
    if actor.role == ROLE_SALES_AGENT and request.agent_id != actor.consultant_id:
        raise ForbiddenError("This conversion request belongs to another agent")
    if actor.role == ROLE_REGIONAL_ADMIN:
        lead = await get_or_404(db, Lead, request.lead_id, label="Lead")
        ensure_licensee_scope(actor, await _lead_licensee_id(db, lead))
    return request


def _checked_temp_password(temp_password: Optional[str]) -> str:
    if temp_password is None:
        return generate_temp_password()
    if not TEMP_PASSWORD_MIN <= len(temp_password) <= TEMP_PASSWORD_MAX:
        raise ValidationFailedError(
            f"temp_password must be {TEMP_PASSWORD_MIN}-{TEMP_PASSWORD_MAX} characters",
            details={"field": "temp_password"},
        )
    return temp_password


@transactional
async def approve_conversion_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    *,
    actor: Actor,
    notifier: Notifier,
    temp_password: Optional[str] = None,
    admin_notes: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> ApprovalResult:
    request = await get_for_update(db, ConversionRequest, request_id, label="Conversion request")
    check_version(request, expected_version, label="Conversion request")
    ensure_transition(
        CONVERSION_TRANSITIONS,
        ConversionStatus(request.status),
        ConversionStatus.APPROVED,
        entity="ConversionRequest",
        entity_id=request.id,
    )

    lead = await get_for_update(db, Lead, request.lead_id, label="Lead")
    licensee_id = await _lead_licensee_id(db, lead)
    ensure_licensee_scope(actor, licensee_id)
    ensure_transition(LEAD_TRANSITIONS, LeadStatus(lead.status), LeadStatus.CONVERTED, entity="Lead", entity_id=lead.id)

    password = _checked_temp_password(temp_password)

    name_key = Company.make_name_key(request.company_name)
    if await db.scalar(select(Company.id).where(Company.name_key == name_key)) is not None:
        logger.warning("approval of %s blocked: company name %r already taken", request.id, request.company_name)
        raise ConflictError(
            "A company with this name already exists; adjust the request and retry",
            details={"company_name": request.company_name},
        )
    if await db.scalar(select(User.id).where(User.email == request.email)) is not None:
        raise ConflictError(
            "A user with this email already exists",
            details={"email": request.email},
        )

    now = utcnow()
    request.status = ConversionStatus.APPROVED.value
    request.decided_by = actor.user_id
    request.decided_at = now
    request.admin_notes = admin_notes
    request.temp_password_hash = hash_password(password)

    company = Company(
        name=request.company_name.strip(),
        name_key=name_key,
        domain=request.domain,
        country=request.country,
        lead_id=lead.id,
        region_id=lead.region_id,
        licensee_id=licensee_id,
        attribution_owner_id=request.agent_id or lead.agent_id,
        attribution_status=AttributionStatus.OPEN.value,
    )
    db.add(company)
    await flush_or_conflict(db, "Company could not be created; the request is still pending, retry")

    admin_user = User(
        email=request.email,
        full_name=request.company_name,
        password_hash=request.temp_password_hash,
        must_change_password=True,
        company_id=company.id,
    )
    db.add(admin_user)

    ensure_transition(
        CONVERSION_TRANSITIONS,
        ConversionStatus.APPROVED,
        ConversionStatus.CONVERTED,
        entity="ConversionRequest",
        entity_id=request.id,
    )
    request.status = ConversionStatus.CONVERTED.value
    request.company_id = company.id

    previous_lead_status = lead.status
    lead.status = LeadStatus.CONVERTED.value

    await audit.append(
        db,
        entity_type=AuditEntity.LEAD,
        entity_id=lead.id,
        action=AuditAction.CREATE,
        actor=actor,
        description=f"Company {company.name} created from lead",
        changes={"company_id": str(company.id), "status": [previous_lead_status, lead.status]},
    )
    await audit.append(
        db,
        entity_type=AuditEntity.CONVERSION_REQUEST,
        entity_id=request.id,
        action=AuditAction.APPROVE,
        actor=actor,
        description=admin_notes,
        changes={"status": [ConversionStatus.PENDING.value, request.status], "company_id": str(company.id)},
    )
    await audit.append(
        db,
        entity_type=AuditEntity.COMPANY,
        entity_id=company.id,
        action=AuditAction.CREATE,
        actor=actor,
        changes={
            "name": company.name,
            "attribution_owner_id": company.attribution_owner_id,
            "attribution_status": company.attribution_status,
            "licensee_id": company.licensee_id,
        },
    )
    await commit_or_conflict(db, "Approval collided with a concurrent change; the request is still pending, retry")
    logger.info("conversion request %s PENDING -> CONVERTED (company %s)", request.id, company.id)

    warnings: list[str] = []
    try:
        await notifier.send_company_credentials(email=request.email, company_name=company.name, temp_password=password)
    except NotificationError as exc:
        logger.error("credential notification for company %s failed: %s", company.id, exc)
        warnings.append(f"Credential email could not be sent: {exc}")

    return ApprovalResult(
        request=request,
        company=company,
        admin_user=admin_user,
        credential=Credential(email=request.email, temp_password=password),
        warnings=warnings,
    )


@transactional
async def decline_conversion_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    *,
    actor: Actor,
    notifier: Notifier,
    decline_reason: Optional[str],
    admin_notes: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> DeclineResult:
    reason = _required_text(decline_reason, "decline_reason")

    request = await get_for_update(db, ConversionRequest, request_id, label="Conversion request")
    check_version(request, expected_version, label="Conversion request")
    ensure_transition(
        CONVERSION_TRANSITIONS,
        ConversionStatus(request.status),
        ConversionStatus.DECLINED,
        entity="ConversionRequest",
        entity_id=request.id,
    )
    if actor.role == ROLE_REGIONAL_ADMIN:
        lead = await get_or_404(db, Lead, request.lead_id, label="Lead")
        ensure_licensee_scope(actor, await _lead_licensee_id(db, lead))

    request.status = ConversionStatus.DECLINED.value
    request.decline_reason = reason
    request.admin_notes = admin_notes
    request.decided_by = actor.user_id
    request.decided_at = utcnow()

    await audit.append(
        db,
        entity_type=AuditEntity.CONVERSION_REQUEST,
        entity_id=request.id,
        action=AuditAction.DECLINE,
        actor=actor,
        description=reason,
        changes={"status": [ConversionStatus.PENDING.value, request.status]},
    )
    await commit_or_conflict(db, "Conversion request was modified concurrently; reload and retry")
    logger.info("conversion request %s PENDING -> DECLINED", request.id)

    warnings: list[str] = []
    try:
        await notifier.send_conversion_declined(email=request.email, company_name=request.company_name, reason=reason)
    except NotificationError as exc:
        logger.error("decline notification for request %s failed: %s", request.id, exc)
        warnings.append(f"Decline notification could not be sent: {exc}")
    return DeclineResult(request=request, warnings=warnings)


@transactional
async def cancel_conversion_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    *,
    actor: Actor,
    expected_version: Optional[int] = None,
) -> ConversionRequest:
    request = await get_for_update(db, ConversionRequest, request_id, label="Conversion request")
    check_version(request, expected_version, label="Conversion request")
    if not actor.is_admin and request.agent_id != actor.consultant_id:
        raise ForbiddenError("Only the submitting agent can cancel this request")
    ensure_transition(
        CONVERSION_TRANSITIONS,
        ConversionStatus(request.status),
        ConversionStatus.CANCELLED,
        entity="ConversionRequest",
        entity_id=request.id,
    )

    request.status = ConversionStatus.CANCELLED.value
    await audit.append(
        db,
        entity_type=AuditEntity.CONVERSION_REQUEST,
        entity_id=request.id,
        action=AuditAction.CANCEL,
        actor=actor,
        changes={"status": [ConversionStatus.PENDING.value, request.status]},
    )
    await commit_or_conflict(db, "Conversion request was modified concurrently; reload and retry")
    logger.info("conversion request %s PENDING -> CANCELLED", request.id)
    return request
