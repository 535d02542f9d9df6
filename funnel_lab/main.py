from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from funnel_lab.api.v1.router import api_router
from funnel_lab.config import get_settings
from funnel_lab.core.database import close_db, init_db
from funnel_lab.core.logging import configure_logging
from funnel_lab.middleware import TelemetryMiddleware
from funnel_lab.models.experiment import Experiment, ExperimentAssignment  # noqa: F401
from funnel_lab.models.tracking_event import TrackingEvent  # noqa: F401

settings = get_settings()
configure_logging(level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("startup", app=settings.APP_NAME, environment=settings.ENVIRONMENT)
    await init_db()
    logger.info("database_initialized")
    yield
    # Shutdown
    await close_db()
    logger.info("shutdown_complete")


app = FastAPI(
    title=settings.APP_NAME,
    description="A/B experimentation and funnel analytics for the booking flow",
    version="0.1.0",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(TelemetryMiddleware)

# Include routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
    }
