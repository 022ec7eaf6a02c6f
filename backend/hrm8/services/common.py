# backend/hrm8/services/common.py
from __future__ import annotations

import functools
import uuid
from typing import Any, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from hrm8.auth.permissions import ROLE_REGIONAL_ADMIN, Actor
from hrm8.core.errors import ConflictError, EngineError, ForbiddenError, NotFoundError

M = TypeVar("M")


async def get_or_404(db: AsyncSession, model: type[M], entity_id: uuid.UUID, *, label: str) -> M:
    obj = await db.get(model, entity_id)
    if obj is None:
        raise NotFoundError(f"{label} not found", details={"id": str(entity_id)})
    return obj


async def get_for_update(db: AsyncSession, model: type[M], entity_id: uuid.UUID, *, label: str) -> M:
    """
    Row-locked read (SELECT ... FOR UPDATE). The lock is held until the caller
    commits or rolls back, serializing transitions on this entity.
    """
    obj = (
        await db.execute(
            select(model)
            .where(model.id == entity_id)  # type: ignore[attr-defined]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(f"{label} not found", details={"id": str(entity_id)})
    return obj


def check_version(obj: Any, expected_version: Optional[int], *, label: str) -> None:
    if expected_version is None:
        return
    if obj.version != expected_version:
        raise ConflictError(
            f"{label} was modified by someone else; reload and retry",
            details={"expected_version": expected_version, "current_version": obj.version},
        )


def ensure_licensee_scope(actor: Actor, licensee_id: Optional[uuid.UUID]) -> None:
    """Regional admins only act inside their own licensee's territory."""
    if actor.role == ROLE_REGIONAL_ADMIN and (licensee_id is None or actor.licensee_id != licensee_id):
        raise ForbiddenError("Outside of your licensee's regions")


async def flush_or_conflict(db: AsyncSession, message: str) -> None:
    try:
        await db.flush()
    except (IntegrityError, StaleDataError) as exc:
        await db.rollback()
        raise ConflictError(message) from exc


async def commit_or_conflict(db: AsyncSession, message: str) -> None:
    try:
        await db.commit()
    except (IntegrityError, StaleDataError) as exc:
        await db.rollback()
        raise ConflictError(message) from exc


def transactional(fn):
    """
    Roll the session back when a mutating service rejects a call, so row locks
    are released and no half-applied state lingers in the identity map.
    """

    @functools.wraps(fn)
    async def wrapper(db: AsyncSession, *args, **kwargs):
        try:
            return await fn(db, *args, **kwargs)
        except EngineError:
            if db.in_transaction():
                await db.rollback()
            raise

    return wrapper
