from dataclasses import dataclass


@dataclass
class AuthContext:
    """Identity context for an authenticated account owner."""
    user_id: str
    email: str | None = None
    auth_method: str = "session"
