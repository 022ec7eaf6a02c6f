from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Mapping, Optional

ROLE_GLOBAL_ADMIN = "GLOBAL_ADMIN"
ROLE_REGIONAL_ADMIN = "REGIONAL_ADMIN"
ROLE_SALES_AGENT = "SALES_AGENT"
ROLE_CONSULTANT = "CONSULTANT"
ROLE_SYSTEM = "SYSTEM"

ADMIN_ROLES = frozenset({ROLE_GLOBAL_ADMIN, ROLE_REGIONAL_ADMIN})
ALL_ROLES = frozenset({ROLE_GLOBAL_ADMIN, ROLE_REGIONAL_ADMIN, ROLE_SALES_AGENT, ROLE_CONSULTANT})


@dataclass(frozen=True)
class Permission:
    # leads.*
    LEADS_READ: str = "leads.read"
    LEADS_WRITE: str = "leads.write"

    # conversions.*
    CONVERSIONS_READ: str = "conversions.read"
    CONVERSIONS_SUBMIT: str = "conversions.submit"
    CONVERSIONS_DECIDE: str = "conversions.decide"

    # attribution.*
    ATTRIBUTION_READ: str = "attribution.read"
    ATTRIBUTION_MANAGE: str = "attribution.manage"

    # revenue.*
    REVENUE_RECORD: str = "revenue.record"

    # commissions.*
    COMMISSIONS_READ: str = "commissions.read"
    COMMISSIONS_MANAGE: str = "commissions.manage"

    # withdrawals.*
    WITHDRAWALS_REQUEST: str = "withdrawals.request"
    WITHDRAWALS_MANAGE: str = "withdrawals.manage"

    # settlements.*
    SETTLEMENTS_READ: str = "settlements.read"
    SETTLEMENTS_MANAGE: str = "settlements.manage"

    # regions.*
    REGIONS_READ: str = "regions.read"
    REGIONS_TRANSFER: str = "regions.transfer"

    # audit.*
    AUDIT_READ: str = "audit.read"

    # wildcards (domain-level)
    LEADS_ALL: str = "leads.*"
    CONVERSIONS_ALL: str = "conversions.*"
    ATTRIBUTION_ALL: str = "attribution.*"
    REVENUE_ALL: str = "revenue.*"
    COMMISSIONS_ALL: str = "commissions.*"
    WITHDRAWALS_ALL: str = "withdrawals.*"
    SETTLEMENTS_ALL: str = "settlements.*"
    REGIONS_ALL: str = "regions.*"
    AUDIT_ALL: str = "audit.*"


PERM = Permission()

ROLE_BASE_PERMISSIONS: Mapping[str, FrozenSet[str]] = {
    ROLE_REGIONAL_ADMIN: frozenset(
        {
            PERM.LEADS_ALL,
            PERM.CONVERSIONS_ALL,
            PERM.ATTRIBUTION_READ,
            PERM.COMMISSIONS_READ,
            PERM.SETTLEMENTS_ALL,
            PERM.REGIONS_READ,
            PERM.AUDIT_READ,
        }
    ),
    ROLE_SALES_AGENT: frozenset(
        {
            PERM.LEADS_ALL,
            PERM.CONVERSIONS_READ,
            PERM.CONVERSIONS_SUBMIT,
            PERM.ATTRIBUTION_READ,
            PERM.COMMISSIONS_READ,
            PERM.WITHDRAWALS_REQUEST,
        }
    ),
    ROLE_CONSULTANT: frozenset(
        {
            PERM.COMMISSIONS_READ,
            PERM.WITHDRAWALS_REQUEST,
        }
    ),
}


def _normalize_role(role: str | None) -> str:
    return (role or "").strip().upper()


def _normalize_extras(extra: Iterable[str] | None) -> FrozenSet[str]:
    if not extra:
        return frozenset()
    return frozenset(p.strip() for p in extra if isinstance(p, str) and p.strip())


def effective_permissions(*, role: str | None, extra: Iterable[str] | None) -> FrozenSet[str]:
    """
    Base role grants + membership.permissions extras (additive).
    GLOBAL_ADMIN is handled as "all" in is_permitted().
    """
    r = _normalize_role(role)
    base = ROLE_BASE_PERMISSIONS.get(r, frozenset())
    extras = _normalize_extras(extra)
    if not extras:
        return base
    return frozenset(set(base) | set(extras))


def _has_domain_wildcard(grants: FrozenSet[str], required: str) -> bool:
    if required in grants:
        return True
    idx = required.find(".")
    if idx <= 0:
        return False
    domain = required[:idx]
    return f"{domain}.*" in grants


def is_permitted(*, role: str | None, grants: FrozenSet[str], required: str) -> bool:
    if _normalize_role(role) == ROLE_GLOBAL_ADMIN:
        return True
    return _has_domain_wildcard(grants, required)


@dataclass(frozen=True)
class Actor:
    """
    Who is calling, as resolved by the identity layer. Every mutating service
    call receives one and records it in the audit log.
    """

    user_id: Optional[uuid.UUID]
    role: str
    licensee_id: Optional[uuid.UUID] = None
    consultant_id: Optional[uuid.UUID] = None
    ip_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES or self.role == ROLE_SYSTEM

    @property
    def is_global_admin(self) -> bool:
        return self.role in {ROLE_GLOBAL_ADMIN, ROLE_SYSTEM}

    @property
    def audit_id(self) -> Optional[str]:
        return str(self.user_id) if self.user_id else None


SYSTEM_ACTOR = Actor(user_id=None, role=ROLE_SYSTEM)
