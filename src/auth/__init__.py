from src.auth.context import AuthContext
from src.auth.dependencies import (
    get_current_user,
    get_owned_account_id,
    require_account_owner,
    require_metrics_admin,
)
from src.auth.jwt import create_access_token

__all__ = [
    "AuthContext",
    "get_current_user",
    "get_owned_account_id",
    "require_account_owner",
    "require_metrics_admin",
    "create_access_token",
]
