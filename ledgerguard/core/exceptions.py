"""
Error taxonomy and global exception handlers.

Every error leaves the service as ``{"detail": ..., "success": false}``
plus optional structured extras (lockout timing, remaining attempts).
Stack traces and internal messages are logged, never returned.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ── Core-layer errors (no HTTP semantics) ───────────────────────────
class ConfigurationError(RuntimeError):
    """A required setting is missing or invalid."""


class SessionError(Exception):
    """Refresh against the session store failed.

    ``reason`` is for server-side logs and the refresh endpoint's message;
    callers must not branch on it beyond "not authenticated".
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


# ── HTTP errors ─────────────────────────────────────────────────────
class ServiceError(HTTPException):
    """HTTPException that carries extra JSON fields for the error body."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        headers: dict[str, str] | None = None,
        **extra: Any,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.extra = {k: v for k, v in extra.items() if v is not None}


class Unauthenticated(ServiceError):
    def __init__(self, detail: str = "Could not validate credentials") -> None:
        super().__init__(
            status.HTTP_401_UNAUTHORIZED,
            detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class Forbidden(ServiceError):
    def __init__(self, detail: str = "Insufficient permissions", **extra: Any) -> None:
        super().__init__(status.HTTP_403_FORBIDDEN, detail, **extra)


class ValidationFailed(ServiceError):
    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(status.HTTP_400_BAD_REQUEST, detail, **extra)


class Conflict(ServiceError):
    def __init__(self, detail: str) -> None:
        super().__init__(status.HTTP_409_CONFLICT, detail)


class NotFound(ServiceError):
    def __init__(self, detail: str = "Not found") -> None:
        super().__init__(status.HTTP_404_NOT_FOUND, detail)


class AccountLocked(ServiceError):
    """Active lockout window on a primary account (HTTP 423)."""

    def __init__(self, locked_until: datetime, retry_after: int, detail: str | None = None) -> None:
        super().__init__(
            status.HTTP_423_LOCKED,
            detail
            or (
                "Account is locked due to too many failed login attempts. "
                f"Try again after {locked_until.isoformat()}."
            ),
            headers={"Retry-After": str(retry_after)},
            locked_until=locked_until.isoformat(),
            retry_after=retry_after,
        )


class Throttled(ServiceError):
    """Short lockout window on a kiosk PIN (HTTP 429)."""

    def __init__(self, retry_after: int, locked_until: datetime | None = None, detail: str | None = None) -> None:
        super().__init__(
            status.HTTP_429_TOO_MANY_REQUESTS,
            detail or f"Account temporarily locked. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
            retry_after=retry_after,
            locked_until=locked_until.isoformat() if locked_until else None,
        )


# ── Handlers ────────────────────────────────────────────────────────
async def _http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    content: dict[str, Any] = {"detail": exc.detail, "success": False}
    if isinstance(exc, ServiceError):
        content.update(exc.extra)
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


async def _rate_limit_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": f"Too many requests: {exc.detail}", "success": False},
    )


async def _integrity_error_handler(_request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error("Database integrity error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=409,
        content={"detail": "Database constraint violation", "success": False},
    )


async def _sqlalchemy_error_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "success": False},
    )


async def _generic_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "success": False},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
