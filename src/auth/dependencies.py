from fastapi import Depends, Header, HTTPException, status
from src.auth.context import AuthContext
from src.auth.jwt import decode_access_token
from src.config import settings
from src.services.accounts import get_owned_account


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_user(authorization: str | None = Header(None)) -> AuthContext:
    """JWT session auth for the administrative webhook endpoints."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_access_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    return AuthContext(user_id=payload["sub"], email=payload.get("email"))


def require_account_owner(account_id: str, auth: AuthContext) -> dict:
    """Load the account if the caller owns it. Unknown and foreign accounts look the same."""
    account = get_owned_account(account_id, auth.user_id)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Instagram account not found",
        )
    return account


async def get_owned_account_id(account_id: str, auth: AuthContext = Depends(get_current_user)) -> str:
    require_account_owner(account_id, auth)
    return account_id


async def require_metrics_admin(auth: AuthContext = Depends(get_current_user)) -> AuthContext:
    """Process-wide counters are limited to the operators listed in ``METRICS_ADMIN_USER_IDS``."""
    if auth.user_id not in settings.metrics_admin_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return auth
