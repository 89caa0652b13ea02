"""Auth routes - who is the dashboard talking to."""

from fastapi import APIRouter, Depends

from aliado.api.auth import CurrentUser, get_current_user

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/whoami")
def whoami(user: CurrentUser = Depends(get_current_user)) -> dict:
    """Authenticated agent with the account and role the inbox UI scopes to."""
    return {
        "id": user.id,
        "external_subject": user.external_subject,
        "email": user.email,
        "name": user.name,
        "account_id": user.account_id,
        "role": user.role,
    }
