import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_google_calendar,  # noqa: F401
)
from .config import FRONTEND_URL
from .database import Base, engine
from .domain.calendar_sync.gate import is_sync_enabled
from .domain.calendar_sync.oauth_router import router as google_calendar_router
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
            raise

    logger.info(f"Calendar auto-sync {'ENABLED' if is_sync_enabled() else 'DISABLED'}")
    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Agency Portal API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(google_calendar_router)
app.include_router(calendar_sync_router)


@app.get("/health")
async def health():
    return {"status": "ok", "calendar_sync_enabled": is_sync_enabled()}
