"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from crown.config import settings
from crown.db.database import init_db, close_db
from crown.api.routes import router
from crown.services.storage import SupabaseStorageBackend
from crown.utils.exceptions import StorageError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting %s...", settings.app_name)

    await init_db()
    logger.info("Database initialized")

    if not settings.tiktok_configured:
        logger.warning("TikTok client key/secret not set; authorization endpoints will report a configuration error")
    if not settings.supabase_configured:
        logger.warning("Supabase not configured; using local storage and unverified session tokens")
    else:
        try:
            await SupabaseStorageBackend().verify_bucket()
            logger.info("Storage bucket '%s' verified", settings.storage_bucket)
        except StorageError as e:
            logger.error("Storage bucket check failed: %s", e.message)

    yield

    # Shutdown
    logger.info("Shutting down %s...", settings.app_name)
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Creator contest platform backend: TikTok account linking and video submissions",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_url,
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix=settings.api_prefix)

# Serve locally stored videos when Supabase storage is not configured
if not settings.supabase_configured:
    settings.local_storage_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/media", StaticFiles(directory=str(settings.local_storage_dir)), name="media")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": "1.0.0",
        "api": settings.api_prefix,
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "crown.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
