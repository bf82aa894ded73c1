"""FastAPI application for satellite device rentals.

This is the main entry point for the rentals API server.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import close_services, init_services
from .api.errors import register_exception_handlers
from .api.router import router

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Load settings, open the database pool (postgres backend),
      wire the use cases and run a first alert scan
    - Shutdown: Drop the services and close the database pool
    """
    logger.info("Starting SatDesk Rentals API...")

    try:
        services = await init_services()
    except Exception as e:
        logger.error(f"Failed to initialize rental services: {e}")
        raise

    await services.alert_engine.scan()

    yield

    logger.info("Shutting down SatDesk Rentals API...")
    await close_services()
    logger.info("Rental services closed")


# Create FastAPI application
app = FastAPI(
    title="SatDesk Rentals API",
    description="""
    API for satellite device rental operations.

    ## Features

    - **Orders**: Create rental orders, track completeness, move them through
      pending, processing, ready-to-ship, shipped and completed
    - **Allocation**: Ranked device recommendations, conflict-free claims and
      bulk allocation with shortfall reporting
    - **Cleanup**: Checklist gate before a returned device can be rented again
    - **Alerts**: Overdue and expiring rentals, low stock, pending backlog

    ## Workflow

    1. Create an order (missing data is flagged, not rejected)
    2. Ask for device recommendations for the rental window
    3. Assign a device; the claim fails with 409 if someone was faster
    4. Mark ready to ship, shipped, and complete on return
    5. Work through the cleanup checklist before the device goes back in stock
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept"],
)

register_exception_handlers(app)
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "SatDesk Rentals API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/rentals/health",
    }


@app.get("/health")
async def health():
    """Global health check."""
    return {"status": "healthy"}


# Entry point for running with uvicorn
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.satdesk.rentals.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
    )
