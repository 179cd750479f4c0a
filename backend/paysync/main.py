"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from paysync.api import monitoring, paystack, play, tasks
from paysync.core.config import Settings, get_settings
from paysync.core.logging import setup_logging
from paysync.core.otel import initialize_otel, instrument_clients, instrument_fastapi, setup_otel_logging
from paysync.db.redis import build_redis_client
from paysync.db.session import build_engine, build_session_factory, init_db
from paysync.services.paystack_client import PaystackClient
from paysync.services.play_client import GooglePlayClient
from paysync.tasks.scheduler import expiry_sweep_task

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    gateway: Optional[PaystackClient] = None,
    billing: Optional[GooglePlayClient] = None,
    redis_client=None
) -> FastAPI:
    """Build the application.

    Anything not injected is constructed once in the lifespan from settings
    and kept on ``app.state``; routes reach it through ``paysync.api.deps``.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan event handler for startup and shutdown"""
        # Startup
        otel_initialized = initialize_otel(settings)
        if otel_initialized:
            if setup_otel_logging(settings):
                logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
            else:
                logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        else:
            logger.info("OpenTelemetry not configured - running without distributed tracing")

        factory = session_factory
        if factory is None:
            factory = build_session_factory(build_engine(settings.DATABASE_URL))
        engine = factory.kw["bind"]

        logger.info("Initializing database...")
        try:
            init_db(engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise

        if otel_initialized:
            instrument_clients(engine)

        client = redis_client if redis_client is not None else build_redis_client(settings.REDIS_URL)

        owned_gateway = None
        paystack_client = gateway
        if paystack_client is None and settings.paystack_configured:
            paystack_client = owned_gateway = PaystackClient.from_settings(settings)

        play_client = billing
        if play_client is None and settings.google_play_configured:
            try:
                play_client = GooglePlayClient.from_settings(settings)
            except Exception as e:
                logger.error(f"Google Play client could not be built, verification disabled: {e}")

        app.state.settings = settings
        app.state.session_factory = factory
        app.state.redis = client
        app.state.gateway = paystack_client
        app.state.billing = play_client

        sweep_task = None
        if settings.SWEEP_INTERVAL_SECONDS > 0:
            logger.info("Starting expiry sweep task...")
            sweep_task = asyncio.create_task(expiry_sweep_task(settings, factory, client))
            logger.info("Expiry sweep task started")

        yield

        # Shutdown
        logger.info("Shutting down...")
        if sweep_task is not None:
            sweep_task.cancel()
        if owned_gateway is not None:
            owned_gateway.close()

    app = FastAPI(
        title="paysync",
        description="Payment and subscription entitlement reconciliation",
        version="1.0.0",
        lifespan=lifespan
    )

    if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        instrument_fastapi(app)

    # Include routers
    app.include_router(paystack.router)
    app.include_router(play.router)
    app.include_router(tasks.router)
    app.include_router(monitoring.router)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"}
        )

    return app
