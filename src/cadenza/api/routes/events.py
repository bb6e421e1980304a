"""Server-sent event stream of narration records per task."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

router = APIRouter(tags=["events"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@router.get("/events/{task_id}")
async def task_events(task_id: str, request: Request) -> StreamingResponse:
    broker = request.app.state.runtime.broker
    return StreamingResponse(
        broker.stream(task_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
