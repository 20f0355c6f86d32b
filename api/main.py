
"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, jobs, stats
from core.config import settings
from core.exceptions import PipelineError
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware, pipeline_error_handler
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.stores.sql import SQLAlchemyDataStore

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Pipeline Orchestrator API",
    description="Define, schedule, execute and track ETL pipeline jobs",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)
app.add_exception_handler(PipelineError, pipeline_error_handler)


# Include routers
app.include_router(health.router)
app.include_router(jobs.router)
app.include_router(stats.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Pipeline Orchestrator API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # Tests install their own orchestrator before startup
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
        orchestrator = PipelineOrchestrator(SQLAlchemyDataStore.from_url())
        app.state.orchestrator = orchestrator

    await orchestrator.initialize()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Pipeline Orchestrator API")
    await app.state.orchestrator.shutdown()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Pipeline Orchestrator API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "jobs": "/jobs",
            "stats": "/stats"
        }
    }
