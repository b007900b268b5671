"""API error handling middleware — consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``ValidationError`` → 400 Bad Request
- ``ProviderError`` → 502 Bad Gateway
- ``StorageError`` → 500 Internal Server Error
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tokensync.api.models import ErrorDetail, ErrorResponse
from tokensync.errors import ProviderError, StorageError, ValidationError

logger = logging.getLogger(__name__)


async def _handle_validation_error(
    request: Request,
    exc: ValidationError,
) -> JSONResponse:
    """Return 400 for missing or malformed input."""
    logger.info("Validation error on %s: %s", request.url.path, exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message=str(exc),
            details={"missing": exc.missing} if exc.missing else None,
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))


async def _handle_provider_error(
    request: Request,
    exc: ProviderError,
) -> JSONResponse:
    """Return 502 when the OAuth provider rejects or fails a call."""
    logger.warning(
        "Provider error on %s: status=%s code=%s",
        request.url.path,
        exc.status_code,
        exc.error_code,
    )
    body = ErrorResponse(
        error=ErrorDetail(
            code="PROVIDER_ERROR",
            message=str(exc),
            provider_status=exc.status_code,
            details={"provider_error": exc.error_code} if exc.error_code else None,
        )
    )
    return JSONResponse(status_code=502, content=body.model_dump(exclude_none=True))


async def _handle_storage_error(
    request: Request,
    exc: StorageError,
) -> JSONResponse:
    """Return 500 when the credential store fails."""
    logger.error("Storage error on %s: %s", request.url.path, exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="STORAGE_CONFLICT" if exc.conflict else "STORAGE_ERROR",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(ValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _handle_provider_error)  # type: ignore[arg-type]
    app.add_exception_handler(StorageError, _handle_storage_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
