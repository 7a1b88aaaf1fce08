"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 5000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Alert engine ──
from backend.app.alerts.container import AlertServices, build_services

# ── API routers ──
from backend.app.api.v1.accounts import router as accounts_router
from backend.app.api.v1.alerts import router as alerts_router
from backend.app.api.v1.live import router as live_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(services: Optional[AlertServices] = None) -> FastAPI:
    """
    Build the application.

    Parameters
    ----------
    services : AlertServices | None
        Pre-built engine (tests). When omitted the engine is built from
        settings at startup and closed at shutdown.
    """

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        owned = services is None
        if owned:
            if settings.STORE_BACKEND == "sql":
                from backend.app.core.database import init_db
                await init_db()
            app.state.services = build_services(settings)
        yield
        logger.info("Shutting down %s", settings.APP_NAME)
        if owned:
            await app.state.services.close()
            if settings.STORE_BACKEND == "sql":
                from backend.app.core.database import close_db
                await close_db()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Crash-alert backend. Runs the alert lifecycle (countdown, "
            "cancel-or-send, acknowledgment, resolution), notifies emergency "
            "contacts over push and SMS, and relays live location to "
            "connected contacts over WebSocket."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(accounts_router)
    app.include_router(alerts_router)
    app.include_router(live_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(app.state.services)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(app.state.services)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
