"""Role checks for the dashboard API.

Roles: agent < admin. Agents read and answer conversations; admins can
also run the reconciliation sync, clear the inbox and read webhook logs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, HTTPException

from aliado.api.auth import CurrentUser, get_current_user

# Lower index = less privilege
ROLE_HIERARCHY = ["agent", "admin"]


@dataclass
class AccountContext:
    """Context returned by require_role."""

    user: CurrentUser
    account_id: str
    role: str


def _role_level(role: str) -> int:
    try:
        return ROLE_HIERARCHY.index(role)
    except ValueError:
        return -1


def require_role(min_role: str) -> Callable[..., AccountContext]:
    """Create a dependency requiring at least `min_role` in the user's account.

    Usage:
        @router.post("/sync")
        def endpoint(ctx: AccountContext = Depends(require_role("admin"))):
            ...
    """
    min_level = _role_level(min_role)
    if min_level < 0:
        raise ValueError(f"Invalid role: {min_role}")

    def dependency(user: CurrentUser = Depends(get_current_user)) -> AccountContext:
        if not user.account_id:
            raise HTTPException(status_code=403, detail="No account")
        if _role_level(user.role) < min_level:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return AccountContext(user=user, account_id=user.account_id, role=user.role)

    return dependency
