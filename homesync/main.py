import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_calendar_sync,  # noqa: F401
)
from .config import PROVIDER_REQUEST_TIMEOUT_SECONDS, SYNC_SCHEDULER_MODE
from .database import Base, engine
from .domain.calendar_sync.bootstrap import build_sync_scheduler
from .domain.calendar_sync.router import router as calendar_sync_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    http_client = httpx.AsyncClient(timeout=PROVIDER_REQUEST_TIMEOUT_SECONDS)
    sync_scheduler = build_sync_scheduler(http_client=http_client)
    app.state.sync_scheduler = sync_scheduler

    if SYNC_SCHEDULER_MODE == "embedded":
        sync_scheduler.start()
    else:
        logger.info(f"Calendar sync scheduler not started in API process (mode: {SYNC_SCHEDULER_MODE})")

    yield

    logger.info("Application shutting down...")
    await sync_scheduler.stop()
    await http_client.aclose()


app = FastAPI(title="HomeSync Calendar Sync API", version="1.0.0", lifespan=lifespan)

app.include_router(calendar_sync_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
