import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from margin_engine.core.config import settings
from margin_engine.core.logging import setup_logging, get_logger
from margin_engine.api.v1.api import api_router
from margin_engine.core.database import init_db
from margin_engine.services.margin_risk_engine import get_margin_risk_engine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    setup_logging()
    logger.info("Starting up...")
    init_db()
    engine = None
    if settings.START_MONITOR_ON_STARTUP:
        engine = get_margin_risk_engine()
        await asyncio.to_thread(engine.start)
    yield
    # Shutdown
    logger.info("Shutting down...")
    if engine is not None:
        engine.close()


def create_application() -> FastAPI:
    """Create and configure FastAPI application"""
    
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Margin position risk monitor API",
        version=settings.VERSION,
        docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
        lifespan=lifespan,
    )

    # Include API routes
    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/")
    async def root():
        return {
            "message": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_application()
