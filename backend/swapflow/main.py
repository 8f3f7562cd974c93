"""
FastAPI application for the media-generation job orchestrator.

Provides HTTP API for submitting and controlling jobs, with WebSocket
progress updates.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from swapflow.api import routes, websocket
from swapflow.config import get_settings
from swapflow.logging_config import setup_logging
from swapflow.services.job_runner import get_job_runner

# Configure logging before anything else
settings = get_settings()
setup_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Logs startup info and stops running jobs on shutdown.
    """
    logger.info("Starting swapflow API")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"fal.ai queue: {settings.fal_queue_url} (key set: {bool(settings.fal_api_key)})")
    logger.info(f"Kling API: {settings.kling_api_url} (key set: {bool(settings.kling_api_key)})")
    logger.info(f"Config directory: {settings.config_dir}")

    yield

    logger.info("Shutting down swapflow API")
    await get_job_runner().shutdown()


app = FastAPI(
    title="swapflow API",
    description="Orchestrator for multi-stage media-generation jobs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(routes.router)
app.include_router(websocket.router)


@app.get("/health")
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns:
        Basic health status
    """
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "swapflow.main:app",
        host="0.0.0.0",
        port=8802,
        reload=True,
    )
