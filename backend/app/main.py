"""
Radio Directory Metadata - Main FastAPI Application
"""

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import get_settings
from app.routers import memory, metadata, stations
from app.services.icy_client import IcyMetadataClient
from app.services.memory_monitor import MemoryMonitor
from app.services.metadata_cache import MetadataCache
from app.services.metadata_detector import MetadataDetector

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown."""
    # Startup
    settings = get_settings()
    app.state.icy_client = IcyMetadataClient(settings)
    app.state.metadata_cache = MetadataCache.from_settings(
        app.state.icy_client.fetch_metadata, settings
    )
    app.state.metadata_detector = MetadataDetector(app.state.metadata_cache, settings)

    app.state.memory_monitor = MemoryMonitor(settings)
    app.state.memory_monitor.register_cleanup_callback(app.state.metadata_cache.clear)
    app.state.memory_monitor.start()

    yield

    # Shutdown
    await app.state.memory_monitor.stop()
    app.state.metadata_cache.clear()
    await app.state.metadata_detector.close()
    await app.state.icy_client.close()


app = FastAPI(
    title="Radio Directory Metadata",
    description="Now playing detection for internet radio streams",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def shed_metadata_under_memory_pressure(request: Request, call_next):
    """Refuse new metadata work while memory usage is above the emergency threshold."""
    monitor = getattr(request.app.state, "memory_monitor", None)
    if monitor is not None and request.url.path.startswith("/api/metadata"):
        if monitor.is_emergency():
            logger.warning(f"Blocking metadata request due to memory usage: {request.url.path}")
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Service temporarily unavailable due to high memory usage",
                    "retryAfter": 60,
                },
                headers={"Retry-After": "60"},
            )
    return await call_next(request)


# Include routers
app.include_router(stations.router, prefix="/api/stations", tags=["stations"])
app.include_router(metadata.router, prefix="/api/metadata", tags=["metadata"])
app.include_router(memory.router, prefix="/api/memory", tags=["memory"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


def run():
    """Serve the API with uvicorn on HOST:PORT."""
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    logger.info(f"Starting metadata API on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
