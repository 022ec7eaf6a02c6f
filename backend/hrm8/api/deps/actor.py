from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.api.v1.auth import get_current_user
from hrm8.auth.permissions import ALL_ROLES, Actor
from hrm8.db.session import get_db
from hrm8.models.platform_membership import PlatformMembership
from hrm8.models.user import User


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def get_current_membership(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PlatformMembership:
    """
    Active platform membership of the calling user (one per user).
    """
    stmt = select(PlatformMembership).where(
        PlatformMembership.user_id == user.id,
        PlatformMembership.is_active.is_(True),
    )
    membership = (await db.execute(stmt)).scalar_one_or_none()
    if not membership:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "membership_missing", "message": "You have no active platform role."},
        )

    role = (membership.role or "").strip().upper()
    if role not in ALL_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "rbac_role_invalid", "message": f"Unknown platform role: {membership.role!r}"},
        )
    return membership


async def get_current_actor(
    request: Request,
    user: User = Depends(get_current_user),
    membership: PlatformMembership = Depends(get_current_membership),
) -> Actor:
    return Actor(
        user_id=user.id,
        role=(membership.role or "").strip().upper(),
        licensee_id=membership.licensee_id,
        consultant_id=membership.consultant_id,
        ip_address=_client_ip(request),
    )
