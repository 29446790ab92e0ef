"""
Main FastAPI application.

Hazard data collector: periodic and manual collection of seismic, tide,
river and space weather observations.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.database import create_tables, get_session_factory, dispose_engine
from app.core.collection_service import build_collection_service
from app.core.scheduler_service import CollectionScheduler
from app.core.observations import HazardDomain
from app.api.v1 import hazards

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Runs on startup and shutdown.
    """
    # Startup
    logger.info("Starting Hazard Data Collector")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Fan-out concurrency: {settings.fan_out_max_concurrency}")

    try:
        create_tables()
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        raise

    service = build_collection_service(settings, get_session_factory())
    app.state.collection_service = service

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = CollectionScheduler(service, settings)
        scheduler.load_default_schedules()
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    # Shutdown
    logger.info("Shutting down")
    if scheduler is not None:
        scheduler.stop()
    await service.shutdown()
    dispose_engine()


# Create FastAPI app
app = FastAPI(
    title="Hazard Data Collector",
    description="Collects, classifies and routes natural hazard observations",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware (configure as needed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(hazards.router, prefix="/api/v1")


@app.get("/")
def root():
    """Root endpoint with service info."""
    return {
        "service": "Hazard Data Collector",
        "version": "0.1.0",
        "domains": [d.value for d in HazardDomain],
        "docs": "/docs"
    }


@app.get("/health")
def health_check():
    """
    Health check endpoint.

    Returns status of the service, database connectivity and scheduler.
    """
    from app.core.database import get_engine
    from sqlalchemy import text

    health_status = {
        "status": "healthy",
        "service": "running",
        "database": "unknown",
        "scheduler": "disabled",
    }

    # Check database connectivity
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["status"] = "degraded"
        health_status["database"] = f"error: {str(e)}"
        logger.warning(f"Database health check failed: {e}")

    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        health_status["scheduler"] = "running" if scheduler.scheduler.running else "stopped"

    return health_status
