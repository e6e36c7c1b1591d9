"""
Noise Monitor Dashboard - Backend API
=====================================
FastAPI application that caches noise readings from the Sonitus API.

ARCHITECTURE:
    The dashboard frontend never talks to the Sonitus API directly. It asks
    this backend, which answers from a local SQLite cache and only goes
    upstream when the cache has nothing for the requested window.

    [Dashboard Frontend] --HTTPS--> [This Backend] ---> [SQLite cache]
                                          |
                                          | (cache miss / every 5 minutes)
                                          v
                                    [Sonitus API]

    A background job (APScheduler) pulls new readings for every active
    monitor every 5 minutes, so most requests are served locally.

HOW TO RUN:
    # Install dependencies
    pip install -e .

    # Configure (or put these in a .env file)
    export SONITUS_USERNAME=...
    export SONITUS_PASSWORD=...

    # Run the server
    cd backend
    uvicorn app.main:app --reload --port 8000

API DOCUMENTATION:
    After starting the server, visit:
    - Swagger UI: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc

Author: Noise Monitor Dashboard Team
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.routers import monitors_router, proxy_router, set_orchestrator
from app.services import (
    NoiseMonitorError,
    ReadingStore,
    SonitusClient,
    SyncOrchestrator,
)


# Load environment variables from .env file
load_dotenv()


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """
    Application configuration loaded from environment variables.

    Environment Variables:
        DB_PATH: SQLite file for the reading cache (default: noise_data.db)
        SONITUS_API_URL: Upstream API root
        SONITUS_USERNAME / SONITUS_PASSWORD: Static upstream credentials
        UPSTREAM_TIMEOUT: Seconds to wait for the upstream API (default: 30)
        SYNC_INTERVAL_SECONDS: Seconds between background syncs (default: 300)
        ENABLE_BACKGROUND_SYNC: "false" to turn the timer off
        FRONTEND_URL: URL of the frontend for CORS
        LOG_LEVEL: Logging level (default: INFO)
    """

    DB_PATH = os.getenv("DB_PATH", "noise_data.db")

    SONITUS_API_URL = os.getenv("SONITUS_API_URL", SonitusClient.DEFAULT_BASE_URL)
    SONITUS_USERNAME = os.getenv("SONITUS_USERNAME", "")
    SONITUS_PASSWORD = os.getenv("SONITUS_PASSWORD", "")
    UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "30"))

    SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "300"))
    ENABLE_BACKGROUND_SYNC = os.getenv("ENABLE_BACKGROUND_SYNC", "true").lower() in ("1", "true", "yes")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Frontend URL for CORS
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

    # Allowed CORS origins
    CORS_ORIGINS = [
        FRONTEND_URL,
        "http://localhost:5173",    # Vite dev server
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]


logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='[%(asctime)s] %(message)s',
    datefmt='%H:%M:%S',
)
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    STARTUP:
        1. Open the reading store (creates the database if needed)
        2. Build the Sonitus client and the orchestrator
        3. Pull the monitor list (a failure here is logged, not fatal)
        4. Start the background sync job
        5. Inject the orchestrator into the routers

    SHUTDOWN:
        1. Stop the background job
        2. Close the HTTP client
        3. Close the database
    """
    # ========== STARTUP ==========
    logger.info("=" * 60)
    logger.info("NOISE MONITOR DASHBOARD - Starting Backend")
    logger.info("=" * 60)

    store = ReadingStore(Config.DB_PATH)
    await store.open()

    client = SonitusClient(
        base_url=Config.SONITUS_API_URL,
        username=Config.SONITUS_USERNAME,
        password=Config.SONITUS_PASSWORD,
        request_timeout=Config.UPSTREAM_TIMEOUT,
    )

    orchestrator = SyncOrchestrator(
        store=store,
        client=client,
        sync_interval=Config.SYNC_INTERVAL_SECONDS,
    )

    try:
        await orchestrator.refresh_monitors()
    except NoiseMonitorError as e:
        logger.error(f"Could not load monitors at startup: {e}")

    if Config.ENABLE_BACKGROUND_SYNC:
        orchestrator.start()

    set_orchestrator(orchestrator)

    logger.info("Services initialized")
    logger.info(f"   Database: {Config.DB_PATH}")
    logger.info(f"   Upstream: {Config.SONITUS_API_URL}")
    logger.info(f"   Background sync: {'every ' + str(Config.SYNC_INTERVAL_SECONDS) + 's' if Config.ENABLE_BACKGROUND_SYNC else 'disabled'}")
    logger.info(f"   CORS origins: {len(Config.CORS_ORIGINS)} configured")
    logger.info("=" * 60)

    yield  # Application runs here

    # ========== SHUTDOWN ==========
    logger.info("Shutting down...")
    set_orchestrator(None)
    await orchestrator.shutdown()
    await client.close()
    await store.close()
    logger.info("Shutdown complete")


# =============================================================================
# CREATE FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Noise Monitor Dashboard API",
    description="""
## Overview

Cached access to Dublin City noise monitor readings (Sonitus API).

## How It Works

1. **Pick monitors** - `POST /api/monitors` lists the active ones
2. **Ask for a window** - `POST /api/data/{ids}` with `startTime`/`endTime`
   (unix seconds, last 7 days only) or `realtime: true` for the last hour
3. **Cache first** - Readings already stored are returned straight away;
   an empty window is fetched from upstream and stored
4. **Background sync** - Every 5 minutes new readings are pulled for
   every active monitor

## Metrics

Every reading has eight values in dB: `laeq`, `la10`, `la90`, `lafmax`,
`lceq`, `lcfmax`, `lc10`, `lc90`.
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


# =============================================================================
# CORS MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR HANDLING
# =============================================================================

@app.exception_handler(NoiseMonitorError)
async def noise_monitor_error_handler(request: Request, exc: NoiseMonitorError):
    """
    Turn service errors into JSON responses.

    Each error class carries its own status code:
    InvalidRequest 400, MonitorNotFound 404, UpstreamUnavailable 502,
    PersistenceError 500.
    """
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


# =============================================================================
# INCLUDE ROUTERS
# =============================================================================

# Cached monitor/data endpoints
app.include_router(monitors_router)

# Raw upstream passthrough
app.include_router(proxy_router)


# =============================================================================
# ROOT ENDPOINTS
# =============================================================================

@app.get(
    "/",
    summary="API Information",
    description="Get basic API information and available endpoints."
)
async def root():
    """Root endpoint with API overview."""
    return {
        "name": "Noise Monitor Dashboard API",
        "version": "1.0.0",
        "documentation": {
            "swagger": "/docs",
            "redoc": "/redoc",
            "openapi": "/openapi.json"
        },
        "endpoints": {
            "monitors": {
                "list": "POST /api/monitors",
                "refresh": "POST /api/monitors/refresh"
            },
            "data": {
                "readings": "POST /api/data/{ids}",
                "initialize": "POST /api/data/{id}/initialize",
                "save": "POST /api/data/{id}/save",
                "latest": "POST /api/data/{id}/latest"
            },
            "stats": "POST /api/stats/{id}",
            "cleanup": "POST /api/maintenance/cleanup",
            "db_status": "GET /api/db/status",
            "proxy": {
                "monitors": "POST /api/proxy/monitors",
                "data": "POST /api/proxy/data"
            }
        }
    }


@app.get(
    "/health",
    summary="Health Check",
    description="Check if the backend is running."
)
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "sync_interval": Config.SYNC_INTERVAL_SECONDS,
        "background_sync": Config.ENABLE_BACKGROUND_SYNC,
        "upstream": Config.SONITUS_API_URL
    }
