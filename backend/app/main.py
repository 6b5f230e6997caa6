"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.cache import AlertLedger, build_ledger
from backend.app.core.config import Settings, settings
from backend.app.core.database import build_engine, build_session_factory, close_db, init_db
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import run_health_check
from backend.app.core.logging_config import setup_logging
from backend.app.core.middleware import RequestLoggingMiddleware

# ── Alert engine ──
from backend.app.alerts.admin import AdminService
from backend.app.alerts.alert_service import AlertNotificationService
from backend.app.alerts.channels.fcm_push import PushSender, build_sender
from backend.app.alerts.scheduler import ScheduledAlertExecutor, ScheduledAlertRunner
from backend.app.alerts.store import AlertStore, InMemoryAlertStore

# ── API routers ──
from backend.app.api.v1.admin import router as admin_router
from backend.app.api.v1.alerts import router as alert_router

# ── Initialise logging ──
setup_logging()
logger = logging.getLogger(__name__)


def create_app(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[AlertStore] = None,
    sender: Optional[PushSender] = None,
    ledger: Optional[AlertLedger] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators not passed in are built from settings during startup:
    the store (memory | sql), the push sender (simulation | fcm) and the
    processed-alert ledger (Redis when REDIS_URL is set).
    """
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            cfg.APP_NAME, cfg.APP_VERSION, cfg.ENVIRONMENT,
        )
        engine = None
        app_store = store
        if app_store is None:
            if cfg.STORE_BACKEND == "sql":
                from backend.app.alerts.sql_store import SqlAlertStore

                engine = build_engine(cfg.DATABASE_URL, cfg)
                await init_db(engine)
                app_store = SqlAlertStore(build_session_factory(engine))
            else:
                app_store = InMemoryAlertStore()
        app_sender = sender or build_sender(cfg)
        app_ledger = ledger or build_ledger(cfg)

        service = AlertNotificationService(app_store, app_sender, app_ledger, cfg)
        executor = ScheduledAlertExecutor(app_store, service)
        runner = None
        if cfg.SCHEDULER_ENABLED:
            runner = ScheduledAlertRunner(executor, cfg.SCHEDULER_INTERVAL_SECONDS)
            runner.start()

        app.state.settings = cfg
        app.state.store = app_store
        app.state.sender = app_sender
        app.state.ledger = app_ledger
        app.state.alert_service = service
        app.state.admin_service = AdminService(app_store, app_sender, cfg)
        app.state.executor = executor
        app.state.runner = runner

        yield

        if runner is not None:
            await runner.stop()
        # Only close what was built here; injected collaborators belong to the caller
        if sender is None:
            await app_sender.close()
        if ledger is None:
            await app_ledger.close()
        if store is None:
            await app_store.close()
        if engine is not None:
            await close_db(engine)
        logger.info("Shutting down %s", cfg.APP_NAME)

    app = FastAPI(
        title=cfg.APP_NAME,
        description=(
            "Organization alert fan-out engine. Resolves followers, applies "
            "per-group opt-out preferences, deduplicates delivery tokens, "
            "dispatches push notifications with per-recipient failure "
            "isolation, records delivery status, and executes scheduled "
            "and recurring alerts."
        ),
        version=cfg.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS if not cfg.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(admin_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": cfg.APP_NAME,
            "version": cfg.APP_VERSION,
            "environment": cfg.ENVIRONMENT,
            "modules": [
                "follower-resolution",
                "eligibility-filter",
                "token-resolution",
                "push-dispatch",
                "scheduled-alerts",
                "admin-utilities",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        state = app.state
        report = await run_health_check(
            state.store, state.ledger, state.sender, state.runner, cfg=state.settings,
        )
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        state = app.state
        report = await run_health_check(
            state.store, state.ledger, state.sender, state.runner, cfg=state.settings,
        )
        if report.status.value == "unhealthy":
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
