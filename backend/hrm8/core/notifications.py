# backend/hrm8/core/notifications.py
"""
Notification dispatch capability.

Delivery itself (email, in-app) lives outside the engine. A failed dispatch is
never allowed to undo a committed transition; callers turn NotificationError
into a warning on their response.
"""
from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    async def send_company_credentials(self, *, email: str, company_name: str, temp_password: str) -> None: ...

    async def send_conversion_declined(self, *, email: str, company_name: str, reason: str) -> None: ...


class LoggingNotifier:
    async def send_company_credentials(self, *, email: str, company_name: str, temp_password: str) -> None:
        # never log the password itself
        logger.info("credentials notification queued for %s (%s)", email, company_name)

    async def send_conversion_declined(self, *, email: str, company_name: str, reason: str) -> None:
        logger.info("decline notification queued for %s (%s)", email, company_name)


notifier: Notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    return notifier
