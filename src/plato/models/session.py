from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AuthSession:
    """
    Who the caller is, as reported by the auth backend.

    `transport_failed` marks a session that could not be determined at all
    (backend unreachable), which is different from "signed out".
    """
    is_authenticated: bool
    user_id: Optional[str] = None
    transport_failed: bool = False

    @classmethod
    def anonymous(cls) -> "AuthSession":
        return cls(is_authenticated=False)

    @classmethod
    def unavailable(cls) -> "AuthSession":
        return cls(is_authenticated=False, transport_failed=True)
