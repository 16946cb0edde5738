"""
CardWatch — Main Application Entry Point
Discount-card management service with rule-based misuse detection.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from prometheus_client import make_asgi_app

from cardwatch.api.routes import cards, dashboard, health, misuse, rules, transactions
from cardwatch.config import settings
from cardwatch.services.distance import get_distance_provider
from cardwatch.services.errors import CardWatchException, exception_to_response
from cardwatch.services.observability import (
    APP_VERSION,
    metrics_middleware,
    set_request_id,
    setup_logging,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
setup_logging()
logger = logging.getLogger("cardwatch")


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Bootstrap shared resources once; tear down on shutdown."""
    logger.info("CardWatch — initialising …")

    # 1. Create all DB tables (idempotent)
    from cardwatch.services.db import init_db
    await init_db()

    # 2. Distance provider used by the stores_distance rule
    app.state.distance_provider = get_distance_provider()

    yield  # ← application runs here

    # 3. Release pooled connections held by the provider (HTTP client)
    close = getattr(app.state.distance_provider, "aclose", None)
    if close is not None:
        await close()

    logger.info("CardWatch — shut down complete.")


# ---------------------------------------------------------------------------
# FastAPI instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="CardWatch",
    description=(
        "Discount-card management with rule-based misuse detection: payer "
        "mismatch, transaction amount, rolling 24-hour frequency and "
        "impossible-travel checks."
    ),
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production() else None,
    redoc_url="/redoc" if not settings.is_production() else None,
    openapi_url="/openapi.json" if not settings.is_production() else None,
)

# ---------------------------------------------------------------------------
# Middleware Stack (order matters)
# ---------------------------------------------------------------------------

# 1. GZIP compression
app.add_middleware(GZipMiddleware, minimum_size=1000)

# 2. CORS
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=True,
    )

# 3. Trusted hosts
if settings.ALLOWED_HOSTS != ["*"]:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.ALLOWED_HOSTS,
    )


@app.middleware("http")
async def request_context_middleware(request: Request, call_next) -> Response:
    """Attach a unique request-id, measure latency, and log the request."""
    request_id = str(uuid.uuid4())
    set_request_id(request_id)
    request.state.request_id = request_id
    start_time = time.perf_counter()

    try:
        response: Response = await call_next(request)
    except Exception as exc:
        response, log_level = exception_to_response(exc, request_id=request_id)
        getattr(logger, log_level)("Unhandled exception: %s", exc)

    elapsed_ms = (time.perf_counter() - start_time) * 1_000
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"

    logger.info(
        "HTTP request completed",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(elapsed_ms, 2),
        },
    )
    return response


@app.middleware("http")
async def metrics_collection_middleware(request: Request, call_next) -> Response:
    """Record metrics for requests."""
    if settings.METRICS_ENABLED:
        return await metrics_middleware(request, call_next)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Exception Handlers
# ---------------------------------------------------------------------------
@app.exception_handler(CardWatchException)
async def cardwatch_exception_handler(request: Request, exc: CardWatchException):
    """Handle CardWatch domain exceptions."""
    request_id = getattr(request.state, "request_id", None)
    resp, log_level = exception_to_response(exc, request_id=request_id)
    getattr(logger, log_level)("CardWatchException: %s", exc)
    return resp


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(health.router,       prefix="/api/v1/health",       tags=["Health"])
app.include_router(cards.router,        prefix="/api/v1/cards",        tags=["Cards"])
app.include_router(transactions.router, prefix="/api/v1/transactions", tags=["Transactions"])
app.include_router(rules.router,        prefix="/api/v1/rules",        tags=["Rules"])
app.include_router(misuse.router,       prefix="/api/v1/misuse",       tags=["Misuse"])
app.include_router(dashboard.router,    prefix="/api/v1/dashboard",    tags=["Dashboard"])


# ---------------------------------------------------------------------------
# Prometheus Metrics Endpoint
# ---------------------------------------------------------------------------
if settings.METRICS_ENABLED:
    app.mount("/metrics", make_asgi_app())


# ---------------------------------------------------------------------------
# Root endpoint
# ---------------------------------------------------------------------------
@app.get("/", tags=["Info"])
async def root():
    """Service info."""
    return {
        "name": settings.APP_NAME,
        "version": APP_VERSION,
        "environment": settings.APP_ENV,
        "docs": "/docs" if not settings.is_production() else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cardwatch.main:app", host="0.0.0.0", port=settings.APP_PORT, reload=settings.DEBUG)
