"""
Mod Marketplace Fulfillment API - Main Application.

FastAPI application with CORS enabled for frontend communication.
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import __version__

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Create FastAPI application
app = FastAPI(
    title="Mod Marketplace Fulfillment API",
    description="Checkout, payment execution and provider webhooks for mod purchases",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS for the storefront
app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Returns the API status and version.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "service": "mod-marketplace-fulfillment-api"
    }


@app.get("/", tags=["Root"])
def root():
    """
    Root endpoint with API information.
    """
    return {
        "message": "Mod Marketplace Fulfillment API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }


# Import and include routers
from api.routers import orders, payments, webhooks

app.include_router(payments.router, prefix="/api/v1", tags=["Payments"])
app.include_router(orders.router, prefix="/api/v1", tags=["Orders"])
app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
