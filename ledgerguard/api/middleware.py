"""
Gatekeeper — per-request authentication gate and security headers.

For every request:

1. Client-navigation prefetches pass through untouched.
2. The route is classified as public, auth-entry (``/login``-style pages)
   or protected.
3. The access token is taken from the ``Authorization`` header, else the
   access cookie, and verified.
4. On a protected route with no valid access token but a refresh cookie,
   the session is rotated in-process under ``REFRESH_TIMEOUT_SECONDS``.
   Success sets fresh cookies and exposes the new token on
   ``request.state.access_token`` for the route's dependencies.
5. Still unauthenticated: API routes get a 401 JSON body, page routes are
   redirected to the login page with the original path in ``from`` and
   their auth cookies cleared. Authenticated visitors of an auth-entry page
   are redirected to the landing page.
6. Defensive headers, including a per-request CSP nonce, are added.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from urllib.parse import quote

from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from ledgerguard.api.cookies import clear_auth_cookies, set_auth_cookies
from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import SessionError
from ledgerguard.core.security import decode_access_token
from ledgerguard.core.sessions import IssuedTokens, rotate_session
from ledgerguard.db.session import async_session_factory

logger = logging.getLogger(__name__)

PUBLIC = "public"
AUTH_ENTRY = "auth_entry"
PROTECTED = "protected"

_PREFIX = settings.API_V1_PREFIX

PUBLIC_ROUTES: frozenset[str] = frozenset(
    {
        "/",
        "/docs",
        "/docs/oauth2-redirect",
        "/redoc",
        f"{_PREFIX}/openapi.json",
        f"{_PREFIX}/health",
        f"{_PREFIX}/auth/login",
        f"{_PREFIX}/auth/refresh",
        f"{_PREFIX}/auth/logout",
        f"{_PREFIX}/auth/2fa/verify",
        f"{_PREFIX}/auth/2fa/backup",
    }
)
PUBLIC_PREFIXES: tuple[str, ...] = ("/static/",)
AUTH_ROUTES: frozenset[str] = frozenset({"/login", "/signup"})
DOCS_ROUTES: frozenset[str] = frozenset({"/docs", "/redoc"})

LOGIN_PAGE = "/login"
LANDING_PAGE = "/dashboard"


def classify_route(path: str) -> str:
    if len(path) > 1:
        path = path.rstrip("/")
    if path in PUBLIC_ROUTES or path.startswith(PUBLIC_PREFIXES):
        return PUBLIC
    if path in AUTH_ROUTES:
        return AUTH_ENTRY
    return PROTECTED


def is_api_route(path: str) -> bool:
    return path == _PREFIX or path.startswith(f"{_PREFIX}/")


def is_prefetch(request: Request) -> bool:
    return (
        request.headers.get("purpose", "").lower() == "prefetch"
        or request.headers.get("sec-purpose", "").lower().startswith("prefetch")
    )


def make_nonce() -> str:
    return base64.b64encode(uuid.uuid4().bytes).decode("ascii")


def content_security_policy(nonce: str, path: str) -> str:
    # The interactive docs load their bundles from jsDelivr.
    cdn = " https://cdn.jsdelivr.net" if path in DOCS_ROUTES else ""
    return (
        "default-src 'self'; "
        f"script-src 'self' 'nonce-{nonce}' 'strict-dynamic'{cdn}; "
        f"style-src 'self' 'unsafe-inline'{cdn}; "
        "img-src 'self' data: blob: https:; "
        "font-src 'self' data:; "
        "connect-src 'self'; "
        "frame-ancestors 'none'; "
        "base-uri 'self'; "
        "form-action 'self'"
    )


def apply_security_headers(response: Response, nonce: str, path: str) -> None:
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=(), payment=()"
    response.headers["Content-Security-Policy"] = content_security_policy(nonce, path)
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"


def _request_token(request: Request) -> str | None:
    auth = request.headers.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip() or None
    cookie = request.cookies.get(settings.ACCESS_TOKEN_COOKIE)
    if cookie and cookie.startswith("Bearer "):
        return cookie[len("Bearer "):]
    return cookie or None


class Gatekeeper(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if is_prefetch(request):
            return await call_next(request)

        path = request.url.path
        nonce = make_nonce()
        request.state.csp_nonce = nonce
        kind = classify_route(path)

        token = _request_token(request)
        authenticated = token is not None and decode_access_token(token) is not None

        refreshed: IssuedTokens | None = None
        if not authenticated and kind == PROTECTED:
            refresh_token = request.cookies.get(settings.REFRESH_TOKEN_COOKIE)
            if refresh_token:
                refreshed = await self._refresh(request, refresh_token)
                if refreshed is not None:
                    request.state.access_token = refreshed.access_token
                    authenticated = True

        if kind == AUTH_ENTRY and authenticated:
            response: Response = RedirectResponse(LANDING_PAGE, status_code=307)
        elif kind == PROTECTED and not authenticated:
            response = self._reject(request, path)
        else:
            response = await call_next(request)

        if refreshed is not None:
            set_auth_cookies(response, refreshed.access_token, refreshed.refresh_token)
        apply_security_headers(response, nonce, path)
        return response

    @staticmethod
    def _reject(request: Request, path: str) -> Response:
        if is_api_route(path):
            return JSONResponse(
                status_code=401,
                content={"detail": "Authentication required", "success": False},
                headers={"WWW-Authenticate": "Bearer"},
            )
        target = path
        if request.url.query:
            target = f"{path}?{request.url.query}"
        response = RedirectResponse(f"{LOGIN_PAGE}?from={quote(target, safe='')}", status_code=307)
        clear_auth_cookies(response)
        return response

    @staticmethod
    async def _refresh(request: Request, refresh_token: str) -> IssuedTokens | None:
        """Rotate the session behind ``refresh_token``; ``None`` on any failure."""
        factory = getattr(request.app.state, "session_factory", async_session_factory)
        try:
            async with factory() as db:
                return await asyncio.wait_for(
                    rotate_session(db, refresh_token),
                    timeout=settings.REFRESH_TIMEOUT_SECONDS,
                )
        except SessionError as exc:
            logger.info("Transparent refresh rejected: %s", exc.reason)
        except asyncio.TimeoutError:
            logger.warning(
                "Transparent refresh timed out after %.1fs", settings.REFRESH_TIMEOUT_SECONDS
            )
        except SQLAlchemyError as exc:
            logger.error("Transparent refresh failed: %s", exc)
        return None
