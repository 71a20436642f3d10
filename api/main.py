"""
api/main.py -- FastAPI application factory for the Immobilier API.

Exposes users, companies and listings over HTTP. Everything the app needs is
built from one explicit Settings object:

    from api.main import create_app
    from core.config import Settings
    app = create_app(Settings())

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost, after the request logger):
  1. TrustedHostMiddleware        -- rejects requests with unexpected Host headers
  2. CORSMiddleware               -- CORS headers for the frontend, credentials allowed
  3. SlowAPIMiddleware            -- enforces the default rate limit from api.limiter
  4. PayloadEncryptionMiddleware  -- only when PAYLOAD_ENCRYPTION=true

Lifespan builds the stores, token issuer, GED client and mailer on startup
and closes them on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import configure_limits, limiter
from api.middleware import PayloadEncryptionMiddleware
from api.models import HealthResponse
from api.responses import fail, ok, validation_errors
from api.routes.v1.listings import router as listings_router
from api.routes.v1.users import router as users_router
from auth.store import UserStore
from auth.tokens import TokenIssuer
from catalog.store import CatalogStore
from core.config import Settings
from core.crypto import PayloadCipher
from core.errors import AppError
from ged.client import GedClient
from mail.mailer import Mailer

logger = logging.getLogger("immobilier.api")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ---------------------------------------------------------------------------
# Crash handlers
#
# A process that has hit an uncaught exception is in an unknown state. Log it
# at CRITICAL and exit non-zero; the process manager restarts the service.
# ---------------------------------------------------------------------------


def _flush_logs() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def _excepthook(exc_type, exc, tb) -> None:
    logger.critical("Uncaught exception, terminating", exc_info=(exc_type, exc, tb))
    _flush_logs()
    os._exit(1)


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.critical(
        "Unhandled error in event loop: %s, terminating",
        context.get("message", "no message"),
        exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else None,
    )
    _flush_logs()
    os._exit(1)


def install_crash_handlers() -> None:
    sys.excepthook = _excepthook
    asyncio.get_running_loop().set_exception_handler(_loop_exception_handler)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build application-level resources on startup; close them on shutdown.

    Everything before yield runs on startup, everything after on shutdown.
    Components only receive the Settings object stored by create_app().
    """
    settings: Settings = app.state.settings
    install_crash_handlers()
    logger.info("%s %s starting up (environment=%s)", settings.app_name, settings.version, settings.environment)

    app.state.user_store = UserStore(settings.database_url)
    app.state.catalog_store = CatalogStore(settings.database_url)
    app.state.token_issuer = TokenIssuer(settings)
    app.state.ged = GedClient.from_settings(settings)
    app.state.mailer = Mailer(settings)
    logger.info("Stores initialized (%s)", settings.database_url.split("?")[0])

    yield

    app.state.ged.close()
    app.state.catalog_store.close()
    app.state.user_store.close()
    logger.info("%s shutdown complete", settings.app_name)


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the same envelope (api/responses.py) so clients parse
# errors uniformly. 4xx are logged at WARNING, 5xx at ERROR with the stack.
# ---------------------------------------------------------------------------


def _log_error(request: Request, status: int, message: str, exc: BaseException | None = None) -> None:
    if status >= 500:
        logger.error("%s %s -> %d %s", request.method, request.url.path, status, message, exc_info=exc)
    else:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, status, message)


def _retry_after(request: Request, exc: RateLimitExceeded) -> int:
    """Seconds until the exhausted window resets, falling back to its length."""
    current = getattr(request.state, "view_rate_limit", None)
    if current is not None:
        reset_at, _ = limiter.limiter.get_window_stats(current[0], *current[1])
        return max(1, int(reset_at - time.time()) + 1)
    return exc.limit.limit.get_expiry()


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        _log_error(request, exc.status_code, exc.message, exc if exc.status_code >= 500 else None)
        return fail(exc.status_code, exc.message, exc.code, errors=exc.errors, data=exc.data)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = validation_errors(exc.errors())
        _log_error(request, 400, f"validation failed on {[e['field'] for e in errors]}")
        return fail(400, "Validation failed.", "validation_error", errors=errors)

    @app.exception_handler(PydanticValidationError)
    async def model_validation_handler(request: Request, exc: PydanticValidationError) -> JSONResponse:
        # Raised by bodies validated by hand (multipart registration and listings).
        errors = validation_errors(exc.errors())
        _log_error(request, 400, f"validation failed on {[e['field'] for e in errors]}")
        return fail(400, "Validation failed.", "validation_error", errors=errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        _log_error(request, exc.status_code, str(exc.detail))
        response = fail(exc.status_code, str(exc.detail), f"http_{exc.status_code}")
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
        # Unique index hit by a concurrent request after the pre-check passed.
        _log_error(request, 409, str(exc.orig))
        return fail(409, "Resource already exists.", "conflict")

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Return 429 with Retry-After when a rate limit is exceeded."""
        retry_after = _retry_after(request, exc)
        _log_error(request, 429, f"rate limit exceeded ({exc.detail})")
        response = fail(429, "Too many requests. Please try again later.", "rate_limited")
        response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unexpected server errors.

        The exception text reaches the client only when DEBUG is on; otherwise
        it is written to the log and the client gets a generic message.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        message = str(exc) if settings.debug else "An unexpected error occurred."
        return fail(500, message, "internal_error")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings) -> FastAPI:
    configure_logging(settings)
    configure_limits(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Real-estate listings: accounts, companies and property adverts.",
        version=settings.version,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )
    app.state.settings = settings

    # Starlette puts each add_middleware() call outside the previous ones, so
    # these are registered innermost first. A request meets log_requests,
    # then TrustedHost, CORS, SlowAPI and finally payload decryption.
    if settings.payload_encryption:
        app.add_middleware(PayloadEncryptionMiddleware, cipher=PayloadCipher(settings.encryption_key))
        logger.info("Encrypted payload transport enabled")
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter

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

    register_exception_handlers(app, settings)

    app.include_router(users_router, prefix="/api/v1", tags=["Users"])
    app.include_router(listings_router, prefix="/api/v1", tags=["Listings"])

    # Health checks from load balancers and monitors must not be throttled.
    @limiter.exempt
    @app.get("/api/v1/health", tags=["Health"])
    def health(request: Request) -> JSONResponse:
        """Return liveness, version and per-component status."""
        try:
            request.app.state.user_store.ping()
            database = "ok"
        except Exception:
            logger.exception("Health check: database unreachable")
            database = "error"
        body = HealthResponse(
            status="healthy" if database == "ok" else "degraded",
            version=settings.version,
            components={"app": "ok", "database": database},
        )
        if database != "ok":
            return fail(503, "Service degraded", "service_unavailable", data=body)
        return ok(body, "Service healthy")

    return app
