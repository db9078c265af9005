"""
Offline Sync API Application Factory
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import get_system
from .offline import router as offline_router
from .. import __version__
from ..logging_config import get_logger

logger = get_logger("offline_sync.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    system = get_system()
    if system.config.retry_scheduler_enabled:
        system.scheduler.start()
    logger.info("Offline sync API started")
    yield
    system.scheduler.stop()
    logger.info("Offline sync API stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Offline Sync API",
        description="Offline transaction queue and sync service for mobile wallets",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(offline_router, prefix="/api/offline", tags=["Offline"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "offline_sync_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Offline Sync API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "status": "/api/offline/status",
                "sync": "/api/offline/sync",
                "data": "/api/offline/data",
                "queue": "/api/offline/queue",
                "metrics": "/api/offline/metrics",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "offline_sync.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
