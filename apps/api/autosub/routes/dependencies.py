"""Dependency wiring for routes."""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import uuid4

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from autosub.adapters.auth import (
    AuthVerificationError,
    FirebaseTokenVerifier,
    MockTokenVerifier,
    TokenVerifier,
)
from autosub.core.config import Settings, get_settings
from autosub.core.logging_safety import safe_log_identifier
from autosub.errors import ApiError
from autosub.schemas.auth import AuthPrincipal
from autosub.services.ledger import CreditLedger
from autosub.services.orchestrator import JobOrchestrator
from autosub.services.session import SessionRegistry, UserSession
from autosub.services.settlement import PurchaseSettlement

bearer_scheme = HTTPBearer(auto_error=False, scheme_name="bearerAuth")
logger = logging.getLogger(__name__)


def _correlation_id(request: Request) -> str:
    """Reuse the caller's ``X-Correlation-Id`` or mint one, cached on request state."""
    cached = getattr(request.state, "correlation_id", None)
    if not cached:
        cached = request.headers.get("X-Correlation-Id") or f"req-{uuid4()}"
        request.state.correlation_id = cached
    return cached


def _reject(request: Request, reason: str, message: str, detail: str = "none") -> ApiError:
    logger.warning(
        "auth.rejected correlation_id=%s method=%s path=%s reason=%s detail=%s",
        safe_log_identifier(_correlation_id(request), prefix="cid"),
        request.method,
        request.url.path,
        reason,
        detail,
    )
    return ApiError(status_code=401, code="UNAUTHORIZED", message=message)


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was built with; bare apps fall back to the environment."""
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()


def get_token_verifier(settings: Annotated[Settings, Depends(get_app_settings)]) -> TokenVerifier:
    """Pick the identity provider named by ``AUTOSUB_AUTH_PROVIDER``."""
    if settings.auth_provider == "mock":
        return MockTokenVerifier()
    return FirebaseTokenVerifier(project_id=settings.firebase_project_id, audience=settings.firebase_audience)


async def get_authenticated_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
) -> AuthPrincipal:
    """Resolve the user that owns the credits and jobs touched by this request."""
    token = credentials.credentials if credentials and credentials.scheme.lower() == "bearer" else ""
    if not token:
        raise _reject(request, "invalid_or_missing_bearer", "Invalid or missing bearer token")

    try:
        principal = verifier.verify_token(token)
    except AuthVerificationError as exc:
        raise _reject(
            request, "token_verification_failed", str(exc) or "Invalid bearer token", exc.reason
        ) from exc

    logger.info(
        "auth.accepted correlation_id=%s path=%s user_id=%s anonymous=%s",
        safe_log_identifier(_correlation_id(request), prefix="cid"),
        request.url.path,
        safe_log_identifier(principal.user_id, prefix="uid"),
        principal.is_anonymous,
    )
    request.state.auth_principal = principal
    return principal


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_user_session(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    registry: Annotated[SessionRegistry, Depends(get_session_registry)],
) -> UserSession:
    """Open the caller's session on the event loop; it starts a background task."""
    return registry.get(principal.user_id)


def get_ledger(session: Annotated[UserSession, Depends(get_user_session)]) -> CreditLedger:
    return session.ledger


def get_orchestrator(session: Annotated[UserSession, Depends(get_user_session)]) -> JobOrchestrator:
    return session.orchestrator


def get_settlement(session: Annotated[UserSession, Depends(get_user_session)]) -> PurchaseSettlement:
    return session.settlement
