"""
Messaging Gateway - instance lifecycle and webhook delivery

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import observability modules
from gateway.config import settings
from gateway.exceptions import GatewayError
from gateway.logging_config import configure_logging
from gateway.sentry_config import configure_sentry
from gateway.middleware.logging import LoggingMiddleware
from gateway.routes.metrics import router as metrics_router

# Import route modules
from gateway.routes.instances import router as instances_router
from gateway.routes.webhooks import router as webhooks_router
from gateway.routes.connector import router as connector_router
from gateway.dependencies.services import build_services

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services and run the webhook scheduler for the app's lifetime."""
    # Tests attach their own services before startup
    services = getattr(app.state, "services", None) or build_services()
    app.state.services = services

    if settings.WEBHOOK_SCHEDULER_ENABLED:
        await services.scheduler.start()
    logger.info("gateway_started", scheduler=settings.WEBHOOK_SCHEDULER_ENABLED)

    try:
        yield
    finally:
        if services.scheduler.running:
            await services.scheduler.stop()
        logger.info("gateway_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Messaging gateway managing instance lifecycles and delivering events to webhooks",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    """Map gateway errors to their HTTP status."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Owner-facing routes
app.include_router(instances_router)
app.include_router(webhooks_router)

# Connector callbacks
app.include_router(connector_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(request: Request):
    """Detailed health check."""
    services = getattr(request.app.state, "services", None)
    scheduler = services.scheduler if services else None
    return {
        "status": "healthy",
        "scheduler": "running" if scheduler and scheduler.running else "stopped",
        "deliveries_in_flight": scheduler.in_flight if scheduler else 0,
    }
