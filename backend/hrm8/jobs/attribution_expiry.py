"""
Periodic attribution expiry.

Run from cron or any scheduler:

    python -m hrm8.jobs.attribution_expiry

Each run moves LOCKED attributions whose window has passed to EXPIRED, except
companies that still have unconfirmed commissions or revenue inside a
PENDING settlement; those are reported as deferred and picked up by a later run.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrm8.core.config import settings
from hrm8.services.attribution import ExpiryRun, expire_attributions

logger = logging.getLogger(__name__)


async def run_attribution_expiry(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    now: Optional[datetime] = None,
) -> ExpiryRun:
    if session_factory is None:
        from hrm8.db.session import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    async with session_factory() as session:
        run = await expire_attributions(session, now=now)

    logger.info(
        "attribution expiry job finished: expired=%d deferred=%d",
        len(run.expired),
        len(run.deferred),
    )
    return run


def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_attribution_expiry())


if __name__ == "__main__":
    main()
