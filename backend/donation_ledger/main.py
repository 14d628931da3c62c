"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from donation_ledger.core.config import settings
from donation_ledger.core.logging import setup_logging
from donation_ledger.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from donation_ledger.db.session import engine, init_db

from donation_ledger.api import monitoring, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    logger.info(f"Starting donation ledger ({settings.ENVIRONMENT})")
    if initialize_otel():
        logger.info("OpenTelemetry initialized")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Donation Ledger",
    description="Reconciles Stripe donation events into the donation ledger",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# Include routers
app.include_router(webhooks.router)
app.include_router(monitoring.router)
