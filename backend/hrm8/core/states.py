# backend/hrm8/core/states.py
"""
Closed status sets and their transition tables.

Columns store the enum *value* as an uppercase string. Anything crossing the API
boundary is parsed through these enums, so a status outside the set never reaches
a service.
"""
from __future__ import annotations

import enum
from typing import Mapping, TypeVar

from hrm8.core.errors import InvalidTransitionError, ValidationFailedError


class LeadStatus(str, enum.Enum):
    NEW = "NEW"
    QUALIFIED = "QUALIFIED"
    CONVERTED = "CONVERTED"
    CANCELLED = "CANCELLED"


class ConversionStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    CONVERTED = "CONVERTED"
    CANCELLED = "CANCELLED"


class AttributionStatus(str, enum.Enum):
    OPEN = "OPEN"
    LOCKED = "LOCKED"
    EXPIRED = "EXPIRED"


class CommissionType(str, enum.Enum):
    PLACEMENT = "PLACEMENT"
    SUBSCRIPTION = "SUBSCRIPTION"
    SERVICE_FEE = "SERVICE_FEE"


class CommissionStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class SettlementStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class JobStatus(str, enum.Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    CLOSED = "CLOSED"


class InvoiceStatus(str, enum.Enum):
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"


class OpportunityStage(str, enum.Enum):
    PROSPECTING = "PROSPECTING"
    QUALIFICATION = "QUALIFICATION"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


class ConsultantRole(str, enum.Enum):
    RECRUITER = "RECRUITER"
    SALES_AGENT = "SALES_AGENT"
    CONSULTANT_360 = "CONSULTANT_360"


# UI filter vocabulary -> ledger types
COMMISSION_TYPE_ALIASES: Mapping[str, frozenset[CommissionType]] = {
    "RECRUITER": frozenset({CommissionType.PLACEMENT}),
    "SALES": frozenset({CommissionType.SUBSCRIPTION, CommissionType.SERVICE_FEE}),
}

IN_FLIGHT_OPPORTUNITY_STAGES = frozenset(
    {
        OpportunityStage.PROSPECTING,
        OpportunityStage.QUALIFICATION,
        OpportunityStage.PROPOSAL,
        OpportunityStage.NEGOTIATION,
    }
)

# Withdrawals in these states still hold their commission claims.
CLAIMING_WITHDRAWAL_STATUSES = frozenset(
    {
        WithdrawalStatus.PENDING,
        WithdrawalStatus.APPROVED,
        WithdrawalStatus.PROCESSING,
        WithdrawalStatus.COMPLETED,
    }
)


# -----------------------------
# Transition tables
# -----------------------------
LEAD_TRANSITIONS: Mapping[LeadStatus, frozenset[LeadStatus]] = {
    LeadStatus.NEW: frozenset({LeadStatus.QUALIFIED, LeadStatus.CONVERTED, LeadStatus.CANCELLED}),
    LeadStatus.QUALIFIED: frozenset({LeadStatus.CONVERTED, LeadStatus.CANCELLED}),
    LeadStatus.CONVERTED: frozenset(),
    LeadStatus.CANCELLED: frozenset(),
}

CONVERSION_TRANSITIONS: Mapping[ConversionStatus, frozenset[ConversionStatus]] = {
    ConversionStatus.PENDING: frozenset(
        {ConversionStatus.APPROVED, ConversionStatus.DECLINED, ConversionStatus.CANCELLED}
    ),
    # APPROVED only ever exists inside the approval transaction.
    ConversionStatus.APPROVED: frozenset({ConversionStatus.CONVERTED}),
    ConversionStatus.DECLINED: frozenset(),
    ConversionStatus.CONVERTED: frozenset(),
    ConversionStatus.CANCELLED: frozenset(),
}

ATTRIBUTION_TRANSITIONS: Mapping[AttributionStatus, frozenset[AttributionStatus]] = {
    AttributionStatus.OPEN: frozenset({AttributionStatus.LOCKED}),
    AttributionStatus.LOCKED: frozenset({AttributionStatus.EXPIRED}),
    AttributionStatus.EXPIRED: frozenset(),
}

COMMISSION_TRANSITIONS: Mapping[CommissionStatus, frozenset[CommissionStatus]] = {
    CommissionStatus.PENDING: frozenset({CommissionStatus.CONFIRMED}),
    CommissionStatus.CONFIRMED: frozenset({CommissionStatus.PAID}),
    CommissionStatus.PAID: frozenset(),
}

WITHDRAWAL_TRANSITIONS: Mapping[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset(
        {WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED}
    ),
    WithdrawalStatus.APPROVED: frozenset(
        {WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED, WithdrawalStatus.REJECTED}
    ),
    # REJECTED from PROCESSING only on a definitive provider refusal
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.COMPLETED, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.REJECTED: frozenset(),
    WithdrawalStatus.CANCELLED: frozenset(),
}

SETTLEMENT_TRANSITIONS: Mapping[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.PENDING: frozenset({SettlementStatus.PAID}),
    SettlementStatus.PAID: frozenset(),
}


E = TypeVar("E", bound=enum.Enum)


def parse_status(enum_cls: type[E], raw: str | None, *, field: str = "status") -> E:
    """Boundary parser: reject any string outside the enumerated set."""
    value = (raw or "").strip().upper()
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationFailedError(
            f"Invalid {field}: {raw!r}. Allowed: {allowed}",
            details={"field": field, "allowed": [m.value for m in enum_cls]},
        )


def ensure_transition(
    table: Mapping[E, frozenset[E]],
    current: E,
    target: E,
    *,
    entity: str,
    entity_id: object | None = None,
) -> None:
    if target not in table.get(current, frozenset()):
        raise InvalidTransitionError(
            f"{entity} cannot move from {current.value} to {target.value}",
            details={
                "entity": entity,
                "entity_id": str(entity_id) if entity_id is not None else None,
                "from": current.value,
                "to": target.value,
            },
        )
