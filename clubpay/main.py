from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import JSONResponse, Response

from clubpay.api.mandates import router as mandates_router
from clubpay.api.subscriptions import router as subscriptions_router
from clubpay.api.tiers import router as tiers_router
from clubpay.api.webhooks import router as webhooks_router
from clubpay.clock import SystemClock
from clubpay.config import settings, validate_settings
from clubpay.db import SessionLocal
from clubpay.errors import register_error_handlers
from clubpay.logging import configure_logging
from clubpay.observability import ObservabilityMiddleware
from clubpay.providers import build_providers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    # ── Startup ──────────────────────────────────────────
    warnings = validate_settings(settings)
    for w in warnings:
        logger.warning("Config warning: %s", w)

    app.state.providers = build_providers(settings)
    app.state.clock = SystemClock()

    logger.info("Application started (pid=%s)", os.getpid())
    yield

    # ── Shutdown ─────────────────────────────────────────
    logger.info("Application shutting down")


app = FastAPI(title="Club Billing API", lifespan=lifespan)

configure_logging()

# ── Middleware (order matters: last added = first executed) ──
register_error_handlers(app)

cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )

app.add_middleware(ObservabilityMiddleware)


def _include_api_router(router: object) -> None:
    app.include_router(router)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1")  # type: ignore[arg-type]


_include_api_router(tiers_router)
_include_api_router(subscriptions_router)
_include_api_router(mandates_router)
app.include_router(webhooks_router)


# ── Health Checks ────────────────────────────────────────


@app.get("/health")
def health_check() -> JSONResponse:
    """Readiness probe; verifies database connectivity."""
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except SQLAlchemyError as e:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "checks": {"database": f"error: {e}"}},
        )
    return JSONResponse(
        status_code=200, content={"status": "ok", "checks": {"database": "ok"}}
    )


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
