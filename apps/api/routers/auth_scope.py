"""Authentication dependencies for account scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None
    is_admin: bool = False


def ensure_account_scope(auth: AuthContext, supplied_account_id: Optional[str]) -> str:
    """Return the account the caller may act on; admins may name any account."""
    if not supplied_account_id or supplied_account_id == auth.account_id:
        return auth.account_id
    if auth.is_admin:
        return supplied_account_id
    raise HTTPException(status_code=403, detail="account_id does not match authenticated session.")


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated account from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    account_id = str(payload.get("sub", ""))
    return AuthContext(
        account_id=account_id,
        email=str(payload.get("email", "")) or None,
        is_admin=account_id in set(settings.BILLING_ADMIN_ACCOUNT_IDS or []),
    )


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Billing admin access required.")
    return auth
