"""FastAPI application entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from autosub.core.config import Settings, get_settings
from autosub.errors import ApiError, AutosubError, ErrorCategory, JobNotFound
from autosub.routes import billing_router, credits_router, jobs_router
from autosub.schemas.error import NoLeakNotFoundError
from autosub.services.session import SessionRegistry, build_registry

logger = logging.getLogger(__name__)

_CATEGORY_STATUS_CODES: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.AUTHORIZATION: 401,
    ErrorCategory.INSUFFICIENT_RESOURCE: 402,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.TRANSIENT_REMOTE: 502,
    ErrorCategory.TERMINAL_REMOTE: 502,
    ErrorCategory.PERSISTENCE: 503,
}


def status_code_for(exc: AutosubError) -> int:
    if isinstance(exc, JobNotFound):
        return 404
    return _CATEGORY_STATUS_CODES[exc.category]


def create_app(settings: Settings | None = None, registry: SessionRegistry | None = None) -> FastAPI:
    settings = settings or get_settings()
    sessions = registry or build_registry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.sessions.aclose()

    app = FastAPI(title="AutoSubtitle API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.sessions = sessions

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(AutosubError)
    async def handle_domain_error(request, exc: AutosubError) -> JSONResponse:
        status_code = status_code_for(exc)
        if isinstance(exc, JobNotFound):
            payload = NoLeakNotFoundError(code="RESOURCE_NOT_FOUND", message=exc.message)
            return JSONResponse(status_code=status_code, content=payload.model_dump())

        logger.info(
            "api.domain_error method=%s path=%s error=%s category=%s status_code=%s",
            request.method,
            request.url.path,
            exc.code,
            exc.category.value,
            status_code,
        )
        return JSONResponse(
            status_code=status_code,
            content=exc.to_payload().model_dump(mode="json", exclude_none=True),
        )

    api_prefix = "/api/v1"
    app.include_router(credits_router, prefix=api_prefix)
    app.include_router(jobs_router, prefix=api_prefix)
    app.include_router(billing_router, prefix=api_prefix)

    return app


app = create_app()
