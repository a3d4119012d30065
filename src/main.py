"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.config import get_settings
from src.db.database import init_db
from src.api.cron import router as cron_router
from src.scheduler.scheduler import router as scheduler_router, get_scheduler_service

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    init_db()
    scheduler = get_scheduler_service()
    if settings.scheduler_enabled:
        scheduler.start()
        scheduler.setup_default_jobs()
    yield
    # Shutdown
    scheduler.stop()


app = FastAPI(
    title="InsiderIntel",
    description="SEC insider trading and institutional holdings tracker",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(cron_router, prefix="/api")
app.include_router(scheduler_router, prefix="/api")


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
