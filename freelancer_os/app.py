"""
FastAPI application entry point for the Freelancer OS backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from freelancer_os.config import get_settings
from freelancer_os.errors import (
    AuthError,
    InvalidRecord,
    NotAuthenticated,
    NotFound,
    StoreError,
    UploadError,
    WriteError,
)
from freelancer_os.routes import router

logger = logging.getLogger(__name__)

AUTH_ERROR_STATUS = {
    "invalid_email": 400,
    "weak_password": 400,
    "invalid_reset_code": 400,
    "user_not_found": 401,
    "invalid_credential": 401,
    "wrong_password": 401,
    "invalid_token": 401,
    "disabled": 403,
    "requires_recent_login": 403,
    "email_in_use": 409,
    "account_exists_with_different_credential": 409,
    "rate_limited": 429,
}


def _error(status_code: int, detail, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError):
        return _error(AUTH_ERROR_STATUS.get(exc.code, 400), exc.message, code=exc.code)

    @app.exception_handler(NotAuthenticated)
    async def _not_authenticated(request: Request, exc: NotAuthenticated):
        return JSONResponse(
            status_code=401,
            content={"detail": str(exc)},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return _error(404, str(exc))

    @app.exception_handler(InvalidRecord)
    async def _invalid_record(request: Request, exc: InvalidRecord):
        return _error(422, str(exc))

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return _error(422, exc.errors(include_url=False, include_context=False))

    @app.exception_handler(WriteError)
    async def _write_error(request: Request, exc: WriteError):
        logger.warning("Write failed for %s: %s", request.url.path, exc)
        return _error(503, str(exc))

    @app.exception_handler(StoreError)
    async def _store_error(request: Request, exc: StoreError):
        logger.warning("Store failure for %s: %s", request.url.path, exc)
        return _error(503, str(exc))

    @app.exception_handler(UploadError)
    async def _upload_error(request: Request, exc: UploadError):
        return _error(400 if exc.rejected else 502, str(exc))


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    app = FastAPI(title="Freelancer OS Backend (FastAPI)", version="0.1.0")
    register_exception_handlers(app)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
