"""FastAPI application with lifespan and router mounting."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cadenza.api.routes import events, health
from cadenza.core.config import AppSettings
from cadenza.runtime import Runtime, build_runtime


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    The pipeline engine subscribes to step events when the app starts.
    """
    settings = runtime.settings if runtime is not None else AppSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        rt = runtime or build_runtime(settings)
        app.state.runtime = rt
        app.state.settings = rt.settings
        await rt.engine.start()
        yield

    app = FastAPI(
        title="Cadenza Music Video Orchestrator",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(health.router)
    app.include_router(events.router, prefix="/tasks")
    return app
