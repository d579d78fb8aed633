"""Heartfledge data sync API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from datasync.core.config import get_settings
from datasync.core.logging import configure_logging, logger
from datasync.routers import data
from datasync.services.session_registry import StoreRegistry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    app.state.registry = StoreRegistry(settings=settings)
    logger.info(
        "Data sync API starting",
        version="0.1.0",
        snapshot_db_path=settings.snapshot_db_path,
        bootstrap_enabled=settings.bootstrap_enabled(),
    )
    yield
    # Shutdown
    app.state.registry.close_all()
    app.state.registry = None
    logger.info("Data sync API shutting down")


app = FastAPI(
    title="Heartfledge Data Sync API",
    description="Tenant-scoped entity store with audit trail and cross-session sync",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(data.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Heartfledge Data Sync API",
        "version": "0.1.0",
        "endpoints": {
            "data": "/data",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
