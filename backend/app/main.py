"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload

With RUN_WORKERS / RUN_SCHEDULER enabled (the default) the API process
also delivers and sweeps; set both to false and run
`python -m backend.app.run_worker` separately to split the roles.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.runtime import DispatchRuntime

# ── API routers ──
from backend.app.api.v1.notifications import router as notification_router
from backend.app.api.v1.campaigns import router as campaign_router
from backend.app.api.v1.templates import router as template_router

logger = get_logger(__name__)


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or default_settings
    setup_logging(config)

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            config.APP_NAME, config.APP_VERSION, config.ENVIRONMENT,
        )
        runtime = DispatchRuntime.from_settings(config)
        app.state.runtime = runtime
        await runtime.start()
        try:
            yield
        finally:
            logger.info("Shutting down %s", config.APP_NAME)
            await runtime.stop()

    app = FastAPI(
        title=config.APP_NAME,
        description=(
            "Multi-channel notification dispatch engine. "
            "Immediate and scheduled delivery over email, SMS and in-app, "
            "bulk sends and campaigns, bounded retry with exponential "
            "backoff, and per-notification status tracking."
        ),
        version=config.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (order matters — outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS if not config.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(notification_router)
    app.include_router(campaign_router)
    app.include_router(template_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": config.APP_NAME,
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
            "channels": app.state.runtime.channels.channels,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — store, queue, workers, scheduler."""
        report = await run_health_check(request.app.state.runtime)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(request.app.state.runtime)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
