"""
FastAPI application entry point for the identity backend.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from backend.config import get_settings
from backend.dependencies import shutdown
from backend.routes import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    shutdown()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Identity Consistency Backend", version="0.1.0", lifespan=lifespan
    )
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
