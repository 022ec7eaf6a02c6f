# backend/hrm8/core/payouts.py
"""
Payout provider capability (Stripe Connect in production).

The engine only needs two things from the provider: whether a consultant can
receive payouts, and an idempotent transfer call. The local provider backs dev
and tests; it records transfers by idempotency key so a retried call returns the
original transfer instead of paying twice.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional, Protocol

from hrm8.core.config import settings


class PayoutTimeout(Exception):
    """The provider did not answer in time; the transfer may or may not exist."""


class PayoutRejected(Exception):
    """The provider definitively refused the transfer."""


@dataclass(frozen=True)
class PayoutAccountStatus:
    payouts_enabled: bool
    onboarding_url: Optional[str] = None


@dataclass(frozen=True)
class PayoutTransfer:
    transfer_id: str
    amount: int
    currency: str
    destination: str


class PayoutProvider(Protocol):
    async def account_status(self, account_id: Optional[str], payouts_enabled: bool) -> PayoutAccountStatus: ...

    async def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
    ) -> PayoutTransfer: ...


class LocalPayoutProvider:
    def __init__(self) -> None:
        self._transfers: dict[str, PayoutTransfer] = {}

    async def account_status(self, account_id: Optional[str], payouts_enabled: bool) -> PayoutAccountStatus:
        if account_id and payouts_enabled:
            return PayoutAccountStatus(payouts_enabled=True)
        return PayoutAccountStatus(
            payouts_enabled=False,
            onboarding_url=f"{settings.PAYOUT_ONBOARDING_BASE_URL}/{account_id or 'new'}",
        )

    async def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
    ) -> PayoutTransfer:
        existing = self._transfers.get(idempotency_key)
        if existing is not None:
            return existing

        digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:24]
        transfer = PayoutTransfer(
            transfer_id=f"tr_{digest}",
            amount=amount,
            currency=currency,
            destination=destination,
        )
        self._transfers[idempotency_key] = transfer
        return transfer

    @property
    def transfer_count(self) -> int:
        return len(self._transfers)


payout_provider: PayoutProvider = LocalPayoutProvider()


def get_payout_provider() -> PayoutProvider:
    return payout_provider
