import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from app.core.database import Base, AsyncSessionLocal, async_engine, get_redis, close_redis
from app.core.config import settings
from app.modules.lending import build_lending_services

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    async with async_engine.begin() as conn:
        # Create all tables (for development - use Alembic in production)
        await conn.run_sync(Base.metadata.create_all)

    redis = await get_redis() if settings.MONITOR_LEASE_ENABLED else None
    lending = build_lending_services(settings, AsyncSessionLocal, redis=redis)
    await lending.pools.ensure_pools(settings.default_pool_assets_list)
    app.state.lending = lending

    if settings.MONITOR_AUTO_START:
        await lending.monitor.start()

    yield

    # Shutdown
    await lending.close()
    await close_redis()
    await async_engine.dispose()


app = FastAPI(
    title="Grove Lending API",
    description="Collateralized lending against grove tokens",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    lending = getattr(request.app.state, "lending", None)
    return {
        "status": "ok",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "monitor": lending.monitor.status().model_dump(mode="json") if lending else None
    }


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "docs": "/docs"
    }
