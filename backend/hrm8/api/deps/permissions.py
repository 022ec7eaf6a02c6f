from __future__ import annotations

from typing import Callable, Sequence

from fastapi import Depends, HTTPException, status

from hrm8.api.deps.actor import get_current_actor, get_current_membership
from hrm8.auth.permissions import ROLE_GLOBAL_ADMIN, Actor, effective_permissions, is_permitted
from hrm8.models.platform_membership import PlatformMembership


def require_permissions(
    required: str | Sequence[str],
    *,
    any_of: bool = False,
) -> Callable:
    """
    Enforce RBAC permissions using:
      - get_current_membership()
      - PlatformMembership.role
      - PlatformMembership.permissions (extra grants)
      - GLOBAL_ADMIN always has all permissions

    Resolves to the calling Actor so routers can hand it straight to a service.

    Args:
      required: permission string OR list of permissions
      any_of: True => any required perm passes; False => all required perms required
    """
    required_list = [required] if isinstance(required, str) else list(required)

    async def _checker(
        membership: PlatformMembership = Depends(get_current_membership),
        actor: Actor = Depends(get_current_actor),
    ) -> Actor:
        role = actor.role
        if role == ROLE_GLOBAL_ADMIN:
            return actor

        grants = effective_permissions(role=role, extra=membership.permissions)

        checks = [is_permitted(role=role, grants=grants, required=p) for p in required_list]
        allowed = any(checks) if any_of else all(checks)

        if not allowed:
            missing = [p for p, ok in zip(required_list, checks) if not ok]
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "rbac_forbidden",
                    "message": "You do not have permission to perform this action.",
                    "required": required_list,
                    "missing": missing,
                    "role": role,
                },
            )

        return actor

    return _checker
