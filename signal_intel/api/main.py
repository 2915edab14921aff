"""
Signal Intelligence API - Main Application

FastAPI application exposing the signal -> hotspot pipeline.

Run with:
    uvicorn signal_intel.api.main:app --reload --port 8000

API Documentation available at:
    - Swagger UI: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signal_intel import __version__
from signal_intel.logging_utils import configure_safe_logging

# Load .env from project root so DATABASE_URL, EMBEDDING_PROVIDER etc. are available
load_dotenv(Path(__file__).parent.parent.parent / ".env")

# Stream handler always; rotating file handler when SIGNAL_INTEL_LOG_FILE is set
configure_safe_logging(level=logging.INFO, log_file=os.getenv("SIGNAL_INTEL_LOG_FILE"))

from signal_intel.api.routers import health, hotspots  # noqa: E402

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Signal Intelligence API",
    description="""
    Turns organizational signals into a small set of ranked executive hotspots.

    ## Features

    - **Signal processing**: root-cause classification and feature vectors
    - **Hotspot generation**: three-stage hybrid clustering, quality gate, ranking
    - **Re-ranking**: refresh rank scores of stored hotspots
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS for frontend applications
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(health.router)
app.include_router(hotspots.router)


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": "Signal Intelligence API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "ready": "/health/ready",
    }
