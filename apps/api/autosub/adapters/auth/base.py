"""Identity provider interfaces."""

from abc import ABC, abstractmethod

from autosub.schemas.auth import AuthPrincipal


class AuthVerificationError(Exception):
    """Raised when a bearer token is rejected.

    ``str(exc)`` is safe to return to clients. ``reason`` is a short slug for
    logs (``malformed``, ``unverifiable``, ``audience``, ``issuer``,
    ``missing_user``) and never carries token material.
    """

    def __init__(self, message: str = "Invalid bearer token", *, reason: str = "malformed") -> None:
        super().__init__(message)
        self.reason = reason


class TokenVerifier(ABC):
    """Turns a bearer token into the stable user id that owns credits and jobs."""

    @abstractmethod
    def verify_token(self, token: str) -> AuthPrincipal:
        """Return the principal, flagging anonymous sign-ins; raise ``AuthVerificationError`` otherwise."""

    @staticmethod
    def principal_for(user_id: object, *, anonymous: bool) -> AuthPrincipal:
        """Build the principal that keys the ledger; a blank id owns nothing and is refused."""
        normalized = str(user_id or "").strip()
        if not normalized:
            raise AuthVerificationError("Bearer token missing user identity", reason="missing_user")
        return AuthPrincipal(user_id=normalized, is_anonymous=anonymous)


__all__ = ["AuthVerificationError", "TokenVerifier"]
