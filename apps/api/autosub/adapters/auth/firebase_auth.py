"""Firebase ID token verification for app users, anonymous sign-ins included."""

from __future__ import annotations

from typing import Any

from autosub.adapters.auth.base import AuthVerificationError, TokenVerifier
from autosub.schemas.auth import AuthPrincipal

_ANONYMOUS_PROVIDER = "anonymous"
_ISSUER_PREFIX = "https://securetoken.google.com/"


class FirebaseTokenVerifier(TokenVerifier):
    """Resolves the Firebase uid that keys a user's credits, purchases and jobs.

    Anonymous accounts are accepted: the app signs users in anonymously on
    first launch and the balance follows the uid.
    """

    def __init__(self, project_id: str | None, audience: str | None) -> None:
        self._project_id = project_id
        self._audience = audience

    def _decode(self, token: str) -> dict[str, Any]:
        import firebase_admin
        from firebase_admin import auth as firebase_auth

        if not firebase_admin._apps:
            if self._project_id:
                firebase_admin.initialize_app(options={"projectId": self._project_id})
            else:
                firebase_admin.initialize_app()

        try:
            return firebase_auth.verify_id_token(token, check_revoked=True)
        except Exception as exc:
            raise AuthVerificationError(reason="unverifiable") from exc

    def _check_claims(self, claims: dict[str, Any]) -> None:
        audience = str(claims.get("aud", ""))
        if self._audience and audience != self._audience:
            raise AuthVerificationError("Invalid bearer token audience", reason="audience")

        if self._project_id:
            issuer = str(claims.get("iss", ""))
            if issuer != _ISSUER_PREFIX + self._project_id and audience != self._project_id:
                raise AuthVerificationError("Invalid bearer token issuer", reason="issuer")

    def verify_token(self, token: str) -> AuthPrincipal:
        claims = self._decode(token)
        self._check_claims(claims)

        provider = (claims.get("firebase") or {}).get("sign_in_provider")
        return self.principal_for(
            claims.get("uid") or claims.get("sub"),
            anonymous=provider == _ANONYMOUS_PROVIDER,
        )


__all__ = ["FirebaseTokenVerifier"]
