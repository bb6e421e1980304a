"""Health check endpoints."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Request, Response, status

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def ready(request: Request, response: Response) -> dict[str, str]:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "starting"}
    if not await asyncio.to_thread(runtime.cache.ping):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "cache unavailable"}
    return {"status": "ready"}
