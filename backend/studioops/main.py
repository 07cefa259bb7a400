# backend/studioops/main.py
"""
FastAPI application for the studio scheduling engine.

Run locally with:
    uvicorn studioops.main:app --app-dir backend --reload
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from pydantic import BaseModel

from .core.config import settings
from .database import Base, engine
from .errors import register_error_handlers
from .routes.v1 import (
    packages as packages_v1,
    prometheus as prometheus_v1,
    sessions as sessions_v1,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

API_TITLE = "StudioOps Scheduling API"
API_VERSION = "1.0.0"
API_DESCRIPTION = (
    "Session scheduling for fitness studios: conflict-free booking of rooms, "
    "coaches and clients, recurring series, and prepaid credit consistency."
)


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    environment: str
    timestamp: str


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"{API_TITLE} starting up (environment={settings.environment})")
    if settings.is_sqlite:
        # Local/dev SQLite databases are created on the fly
        Base.metadata.create_all(bind=engine)
    yield
    logger.info(f"{API_TITLE} shutting down")


app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
)
register_error_handlers(app)

api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(sessions_v1.router, prefix="/sessions")
api_v1.include_router(packages_v1.router, prefix="/client-packages")
app.include_router(api_v1)
app.include_router(prometheus_v1.router, prefix="/metrics")


@app.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        service="studioops-api",
        version=API_VERSION,
        environment=settings.environment,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
