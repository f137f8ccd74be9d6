"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import setup_cors_middleware, security_middleware, global_exception_handler
from app.core.otel import initialize_otel, setup_otel_logging, instrument_fastapi, instrument_sqlalchemy
from app.db.session import engine, init_db
from app.db.redis import create_redis_client
from app.models import Base  # Import all models to register with Base.metadata
from app.services.stripe_service import StripeGateway

# Import routers
from app.api import checkout, subscriptions, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()
    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    app.state.redis = create_redis_client()
    try:
        app.state.redis.ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    app.state.stripe = StripeGateway.from_settings()

    instrument_sqlalchemy(engine)

    yield

    # Shutdown
    logger.info("Shutting down...")
    app.state.redis.close()


# Create FastAPI app
app = FastAPI(
    title="OnSite Billing",
    description="Subscription checkout and Stripe webhook reconciliation for the OnSite apps",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

setup_cors_middleware(app)

# Include routers
app.include_router(checkout.router)
app.include_router(subscriptions.router)
app.include_router(subscriptions.stripe_router)  # Separate router for /api/stripe
app.include_router(webhooks.router)

# Security middleware
app.middleware("http")(security_middleware)

# Global exception handler
app.add_exception_handler(Exception, global_exception_handler)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
