"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.otel import initialize_otel, instrument_app
from app.db.session import engine, init_db
from app.services.container import build_monitor, build_pipeline

# Import routers
from app.api import monitoring, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    background = []
    from app.tasks.cleanup import cleanup_task
    background.append(asyncio.create_task(cleanup_task()))
    logger.info("Cleanup task started")

    if settings.MONITOR_PERSIST_INTERVAL_SECONDS > 0:
        from app.tasks.monitor_snapshot import monitor_snapshot_task
        background.append(asyncio.create_task(
            monitor_snapshot_task(app.state.monitor, settings.MONITOR_PERSIST_INTERVAL_SECONDS)
        ))
        logger.info("Monitor snapshot task started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background:
        task.cancel()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Petstore Payment Webhooks",
        description="Reconciles payment processor notifications with local subscriptions and orders",
        version="1.0.0",
        lifespan=lifespan
    )

    app.state.monitor = build_monitor(settings)
    app.state.pipeline = build_pipeline(settings, monitor=app.state.monitor)

    instrument_app(app, engine)

    app.include_router(webhooks.router)
    app.include_router(monitoring.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "stage": "internal", "error": "Internal server error"}
        )

    return app


app = create_app()
