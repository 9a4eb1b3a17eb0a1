"""Offline verifier used by local runs and the test suite."""

from autosub.adapters.auth.base import AuthVerificationError, TokenVerifier
from autosub.schemas.auth import AuthPrincipal

_TOKEN_PREFIX = "test"
_ANONYMOUS_FLAG = "anonymous"


class MockTokenVerifier(TokenVerifier):
    """Accepts ``test:<user_id>`` and ``test:<user_id>:anonymous``, nothing else."""

    def verify_token(self, token: str) -> AuthPrincipal:
        prefix, _, rest = token.partition(":")
        if prefix != _TOKEN_PREFIX or not rest:
            raise AuthVerificationError()

        user_id, _, flag = rest.partition(":")
        if flag and flag != _ANONYMOUS_FLAG:
            raise AuthVerificationError()

        return self.principal_for(user_id, anonymous=bool(flag))


__all__ = ["MockTokenVerifier"]
