"""
api/routes/traces.py
---------------------
GET /v1/traces/stream/{workflow_id}   Server-Sent Events trace stream
GET /v1/traces/{workflow_id}          JSON trace history

The stream sends a `connected` frame, then every trace event of the run
(history first, then live), and a `done` frame after the terminal
`workflow_run` event. Idle connections get a heartbeat comment.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import StreamingResponse

import config
from modules.observability.replay import load_trace
from schemas.trace import TraceEvent

logger = logging.getLogger(__name__)

router = APIRouter()


def _frame(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.get("/stream/{workflow_id}", summary="Stream a run's trace events (SSE)")
async def stream_traces(workflow_id: str, request: Request) -> StreamingResponse:
    bus = request.app.state.services.bus
    heartbeat_s = getattr(request.app.state, "heartbeat_s", config.SSE_HEARTBEAT_S)
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[TraceEvent] = asyncio.Queue()

    def listener(event: TraceEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    async def gen() -> AsyncIterator[str]:
        unsubscribe = bus.subscribe(workflow_id, listener)
        logger.debug("[traces] client connected to %s", workflow_id)
        try:
            yield _frame({"type": "connected", "workflowId": workflow_id})
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": heartbeat\n\n"
                    continue
                yield _frame(event.to_dict())
                if event.is_terminal:
                    yield _frame({"type": "done", "workflowId": workflow_id})
                    break
        finally:
            unsubscribe()
            logger.debug("[traces] client left %s", workflow_id)

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{workflow_id}", summary="Trace history of a run")
def get_traces(workflow_id: str, request: Request) -> dict:
    events = request.app.state.services.bus.get_history(workflow_id)
    source = "memory"
    if not events:
        events = load_trace(workflow_id, logs_dir=request.app.state.services.trace_log.logs_dir)
        source = "log"
    if not events:
        raise HTTPException(status_code=404, detail="No traces recorded for this workflow")
    return {
        "workflowId": workflow_id,
        "source": source,
        "events": [e.to_dict() for e in events],
    }
