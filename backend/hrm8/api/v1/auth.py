# backend/hrm8/api/v1/auth.py
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm8.core.config import settings
from hrm8.core.security import bearer_scheme, create_access_token, decode_access_token, hash_password, verify_password
from hrm8.db.session import get_db
from hrm8.models.platform_membership import PlatformMembership
from hrm8.models.user import User
from hrm8.schemas.auth import ChangePasswordRequest, LoginRequest, MeResponse, TokenResponse

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db)) -> TokenResponse:
    """
    Body: {"email": "admin@acme.com", "password": "..."}
    Company admins created by a conversion log in here with their one-time password.
    """
    email = User.normalize_email(payload.email)
    user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()

    if not user or not user.password_hash or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    access_token = create_access_token(
        subject=str(user.id),
        expires_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
    )
    return TokenResponse(access_token=access_token, must_change_password=user.must_change_password)


async def get_current_user(
    credentials=Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Dependency for protected endpoints.
    """
    token = credentials.credentials
    user_id = decode_access_token(token)  # returns sub string

    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        user_uuid = uuid.UUID(str(user_id))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")

    user = await db.get(User, user_uuid)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User inactive")

    return user


@router.get("/me", response_model=MeResponse)
async def me(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> MeResponse:
    """
    Returns current user identity plus platform role, if any.
    """
    membership = (
        await db.execute(select(PlatformMembership).where(PlatformMembership.user_id == user.id))
    ).scalar_one_or_none()
    return MeResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        is_active=user.is_active,
        must_change_password=user.must_change_password,
        company_id=user.company_id,
        role=membership.role if membership else None,
        licensee_id=membership.licensee_id if membership else None,
        consultant_id=membership.consultant_id if membership else None,
    )


@router.post("/change-password", status_code=status.HTTP_204_NO_CONTENT)
async def change_password(
    payload: ChangePasswordRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> None:
    """
    Replaces the one-time password issued at conversion; clears must_change_password.
    """
    if not user.password_hash or not verify_password(payload.current_password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if payload.new_password == payload.current_password:
        raise HTTPException(status_code=422, detail="New password must differ from the current one")

    user.password_hash = hash_password(payload.new_password)
    user.must_change_password = False
    await db.commit()
