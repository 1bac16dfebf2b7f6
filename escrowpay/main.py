from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrowpay import db
from escrowpay.config import AppInfo, Settings, get_settings
from escrowpay.core.logging import get_logger, setup_logging
from escrowpay.core.runtime_state import set_scheduler_active
import escrowpay.models  # noqa: F401  registers the tables
from escrowpay.routers import get_api_router
from escrowpay.services.cron import auto_release_once, expire_pending_once, reconcile_transfers_once
from escrowpay.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from escrowpay.utils.errors import EscrowError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = get_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_paystack_secret(settings: Settings) -> None:
    """Fail fast when the Paystack secret key is missing outside dev."""

    env_lower = settings.app_env.lower()
    if settings.PAYSTACK_SECRET_KEY:
        return
    if env_lower not in ALLOWED_CREATE_ENV:
        logger.error("PAYSTACK_SECRET_KEY is missing", extra={"env": settings.app_env})
        raise RuntimeError("Missing Paystack secret key in non-dev environment.")
    logger.warning("PAYSTACK_SECRET_KEY is not configured; allowed in dev only.", extra={"env": settings.app_env})


def _start_scheduler(settings: Settings) -> AsyncIOScheduler:
    jobs = (
        (auto_release_once, settings.AUTO_RELEASE_INTERVAL_MINUTES, "auto-release-escrows"),
        (expire_pending_once, settings.EXPIRE_PENDING_INTERVAL_MINUTES, "expire-pending-escrows"),
        (reconcile_transfers_once, settings.RECONCILE_TRANSFERS_INTERVAL_MINUTES, "reconcile-transfers"),
    )
    runner = AsyncIOScheduler()
    runner.start()
    for func, minutes, job_id in jobs:
        runner.add_job(func, "interval", minutes=minutes, id=job_id, replace_existing=True)
    runner.add_job(
        refresh_scheduler_lock,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    return runner


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    setup_logging()
    settings = get_settings()
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_paystack_secret(settings)

    db.init_engine()
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    # Enable SCHEDULER_ENABLED on every runner if needed; the DB lock keeps the sweeps single-instance.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _start_scheduler(settings)
            set_scheduler_active(True)
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(EscrowError)
async def escrow_exception_handler(request: Request, exc: EscrowError) -> JSONResponse:
    status_code = 503 if exc.code == "PERSISTENCE_ERROR" else 400
    return JSONResponse(status_code=status_code, content=error_response(exc.code, exc.message, exc.details))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
