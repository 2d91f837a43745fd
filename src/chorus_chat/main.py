# src/chorus_chat/main.py
"""Main entry point for the Chorus Chat application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from chorus_chat.api.v1 import channels_router
from chorus_chat.core.settings import settings
from chorus_chat.services.conversations import ConversationSync, build_conversation_sync

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Configure logger for this module
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Chorus Chat API",
    description="Real-time conversation synchronization for community and direct chats",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(channels_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    if not settings.hosted_enabled:
        from chorus_chat.db.session import create_tables

        create_tables()
    app.state.conversation_sync = build_conversation_sync(settings)
    logger.info("Conversation engine started (%s backend)", settings.persistence_backend)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    sync: ConversationSync | None = getattr(app.state, "conversation_sync", None)
    if sync:
        await sync.close()
        close_store = getattr(sync.store, "close", None)
        if close_store is not None:
            await close_store()
    app.state.conversation_sync = None


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Real-time conversation synchronization for community and direct chats",
        "docs": "/docs",
        "redoc": "/redoc"
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chorus_chat.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
