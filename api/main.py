"""
api/main.py -- FastAPI application entry point for the back office.

Exposes the JSON API under /api. The server-rendered UI (web/routes.py) is
mounted on the same app by asgi.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. setup_redirect        -- first-run redirect to /setup
  3. refresh_session       -- silent access-token renewal from the refresh cookie
  4. SessionMiddleware     -- OAuth state storage for authlib
  5. SlowAPIMiddleware     -- per-route rate limits from api.limiter
  6. CORSMiddleware        -- CORS headers for allowed browser origins
  7. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan handles startup (stores, OAuth registry, token purge task) and
shutdown (cancel purge task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.audit_logs import router as audit_logs_router
from api.routes.auth import router as auth_router
from api.routes.dashboard import router as dashboard_router
from api.routes.orders import router as orders_router
from api.routes.products import router as products_router
from api.routes.settings import router as settings_router
from api.routes.users import router as users_router
from audit.store import AuditStore
from auth.dependencies import get_current_user
from auth.models import User
from auth.oauth import oauth as oauth_client
from auth.sessions import InactiveAccountError, rotate_refresh_token
from auth.store import UserStore
from auth.tokens import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    access_token_lifetime,
    clear_auth_cookies,
    decode_access_token,
    set_auth_cookies,
)
from commerce.store import CommerceStore
from core.config import get_settings

APP_VERSION = "1.0.0"

_cfg = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _cfg.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("backoffice.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired verification codes and refresh tokens every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        try:
            removed = await run_in_threadpool(app.state.user_store.purge_expired_tokens)
        except SQLAlchemyError:
            logger.exception("Token purge failed")
            continue
        if removed:
            logger.info("Purged %d expired tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task is created last because it references
    app.state.user_store.
    """
    logger.info("BackOffice API starting up")
    app.state.user_store = UserStore()
    app.state.audit_store = AuditStore()
    app.state.commerce = CommerceStore()
    app.state.setup_required = not app.state.user_store.has_users()
    app.state.oauth = oauth_client
    logger.info("Stores initialized (setup_required=%s)", app.state.setup_required)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.commerce.close()
    app.state.audit_store.close()
    app.state.user_store.close()
    logger.info("BackOffice API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="BackOffice API",
    description="Users, products, orders, audit trail and settings for the back office.",
    version=APP_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the front of the stack, so the LAST middleware
# registered is the OUTERMOST one.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_cfg.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cfg.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=_cfg.secret_key, https_only=_cfg.secure_cookies)

# SlowAPIMiddleware looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Session refresh middleware
#
# A browser whose access cookie expired still holds a refresh cookie. Rather
# than bouncing every page load through /login, rotate the refresh token here,
# rewrite the request's Cookie header so downstream auth sees the new access
# token, and set both new cookies on the response.
# Parallel requests carrying the same refresh cookie receive the same new
# pair (auth.sessions.ROTATION_GRACE_SECONDS); only an unusable token clears
# the cookies.
# ---------------------------------------------------------------------------

_NO_REFRESH_PATHS = frozenset({"/api/auth/refresh", "/api/auth/logout", "/logout", "/api/health"})


def _replace_cookies(scope: dict, cookies: dict[str, str]) -> None:
    headers = [(k, v) for k, v in scope["headers"] if k != b"cookie"]
    headers.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode("latin-1")))
    scope["headers"] = headers


@app.middleware("http")
async def refresh_session(request: Request, call_next):
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    access_token = request.cookies.get(ACCESS_COOKIE)
    if (
        not refresh_token
        or request.url.path in _NO_REFRESH_PATHS
        or (access_token and decode_access_token(access_token) is not None)
    ):
        return await call_next(request)

    store: UserStore = request.app.state.user_store
    try:
        access_seconds = access_token_lifetime((await run_in_threadpool(store.get_app_settings))["session_timeout"])
        result = await run_in_threadpool(rotate_refresh_token, store, refresh_token, access_seconds)
    except InactiveAccountError:
        result = None

    if result is None:
        response = await call_next(request)
        clear_auth_cookies(response)
        return response

    user, tokens = result
    cookies = dict(request.cookies)
    cookies[ACCESS_COOKIE] = tokens.access_token
    cookies[REFRESH_COOKIE] = tokens.refresh_token
    _replace_cookies(request.scope, cookies)
    logger.debug("Session refreshed for user_id=%s", user.id)

    response = await call_next(request)
    set_auth_cookies(response, tokens.access_token, tokens.refresh_token, user.id, tokens.access_expires_in)
    return response


# ---------------------------------------------------------------------------
# Setup redirect middleware
#
# If no users have been created yet, redirect every request to /setup so the
# first admin account can be created before any other page is accessible.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def setup_redirect(request: Request, call_next):
    """Redirect all requests to /setup when no users exist (first-run state).

    setup_required is set in lifespan and cleared by POST /setup once the
    first admin is created. POST /setup re-checks at the DB level to guard
    against two concurrent requests both passing this check [M1].
    """
    path = request.url.path
    if getattr(request.app.state, "setup_required", False):
        exempt = ("/setup", "/api/health")
        if path not in exempt and not path.startswith(("/static/",)):
            return RedirectResponse("/setup", status_code=302)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(users_router, prefix="/api", tags=["Users"])
app.include_router(products_router, prefix="/api", tags=["Products"])
app.include_router(orders_router, prefix="/api", tags=["Orders"])
app.include_router(audit_logs_router, prefix="/api", tags=["Audit Logs"])
app.include_router(settings_router, prefix="/api", tags=["Settings"])
app.include_router(dashboard_router, prefix="/api", tags=["Dashboard"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="BackOffice API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="BackOffice API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a dict, use it directly as the error field rather than
    stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit and no auth: load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", include_in_schema=True, tags=["Health"])
def health(request: Request):
    """Return API liveness, version and database reachability."""
    try:
        request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return JSONResponse(
            status_code=503,
            content=HealthResponse(status="degraded", version=APP_VERSION, database="unavailable").model_dump(),
        )
    return HealthResponse(version=APP_VERSION)
