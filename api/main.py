"""
api/main.py -- FastAPI application entry point for the auth service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every collaborator once and hangs it on app.state:
  auth_config, store, cache (or None), auth_service, authenticator.
Shutdown closes them in reverse order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi.middleware import SlowAPIMiddleware

from api.errors import register_exception_handlers
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.auth import router as auth_router
from auth.dependencies import Authenticator
from auth.notifier import LogOTPNotifier
from auth.service import AuthService
from auth.store import SQLAuthStore
from auth.tokens import TokenCodec
from cache.auth_cache import build_auth_cache
from core.config import get_settings

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("restauth.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build and tear down application-level resources.

    Startup order matters:
      1. Store first -- creates the schema and the fixed roles.
      2. Cache second -- optional; a failed ping means running without it.
      3. Service and authenticator last -- they receive the two above.
    """
    settings = get_settings()
    auth_config = settings.auth_config()
    cache_config = settings.cache_config()
    logger.info("Auth API starting up (env=%s)", settings.env)

    store = SQLAuthStore(settings.database_url)
    logger.info("Store initialized (has_users=%s)", store.has_users())

    cache = build_auth_cache(cache_config)
    if cache is not None:
        if await cache.verify():
            logger.info("Redis cache enabled at %s", cache_config.address)
        else:
            await cache.close()
            cache = None

    codec = TokenCodec(auth_config)
    app.state.auth_config = auth_config
    app.state.store = store
    app.state.cache = cache
    app.state.auth_service = AuthService(
        store, codec, auth_config, cache=cache, notifier=LogOTPNotifier(), cache_ttl=cache_config.ttl
    )
    app.state.authenticator = Authenticator(codec, store, cache, cache_ttl=cache_config.ttl)

    yield

    # Shutdown
    if cache is not None:
        await cache.close()
    store.close()
    logger.info("Auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="REST API Auth",
    description="Session and token lifecycle for a CRUD REST backend.",
    version=__version__,
    lifespan=lifespan,
    docs_url=None if _settings.is_production else "/docs",
    redoc_url=None if _settings.is_production else "/redoc",
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_host_list or ["*"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# Routers and exception handlers
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
register_exception_handlers(app)


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit and no auth: load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness plus database and cache reachability."""
    components = {"app": "ok"}
    db_ok = await asyncio.to_thread(request.app.state.store.ping)
    components["database"] = "ok" if db_ok else "error"

    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        components["cache"] = "disabled"
    else:
        components["cache"] = "ok" if await cache.verify() else "error"

    status = "healthy" if db_ok else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
