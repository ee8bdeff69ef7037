"""
EV Forum Engine.

FastAPI application serving the community forum: categories, threaded
replies, votes, moderation and live presence.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from loguru import logger

from evforum.api.v1 import router as api_v1_router
from evforum.core.config import settings
from evforum.core.database import close_db, init_db
from evforum.core.errors import ForumError, forum_error_handler
from evforum.core.logging import setup_logging
from evforum.modules.presence.tracker import get_presence_tracker


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    logger.info("Starting EV Forum Engine...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Start presence sweep
    presence = await get_presence_tracker()
    await presence.start()

    logger.info("EV Forum Engine started successfully")

    yield

    # Shutdown
    logger.info("Shutting down EV Forum Engine...")

    await presence.stop()

    # Close database
    await close_db()

    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    EV Forum Engine

    ## Features

    - **Forum**: Categories, threads and nested replies
    - **Votes**: Up/down votes with quality ratings
    - **Moderation**: Pin, lock, delete and restore with an audit log
    - **Presence**: Who is online and who is typing

    ## Documentation

    - [API Docs](/docs) - Interactive Swagger UI
    - [ReDoc](/redoc) - Alternative documentation
    """,
    openapi_url=f"{settings.api_v1_prefix}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ForumError, forum_error_handler)

# Include API router
app.include_router(api_v1_router, prefix=settings.api_v1_prefix)


@app.get("/health", tags=["System"])
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    presence = await get_presence_tracker()
    return {
        "status": "healthy",
        "version": settings.app_version,
        "online_users": presence.count_online(),
    }


@app.get("/", tags=["System"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "api": settings.api_v1_prefix,
    }
