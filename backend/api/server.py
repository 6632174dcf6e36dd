"""
api/server.py
-------------
FastAPI application entry point.

Run dev server:
    cd backend
    uvicorn api.server:app --reload --port 8000

Endpoints:
    GET  /v1/health
    GET  /v1/health/ready
    POST /v1/workflow
    POST /v1/workflow/{workflow_id}/approve
    GET  /v1/traces/stream/{workflow_id}     (Server-Sent Events)
    GET  /v1/traces/{workflow_id}
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from api.routes import health, traces, workflow
from main import Services, build_services, configure_logging

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app; tests pass their own Services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or build_services()
        app.state.services = svc
        app.state.tasks = set()
        svc.start()
        logger.info("[server] services started")
        try:
            yield
        finally:
            for task in list(app.state.tasks):
                task.cancel()
            await svc.shutdown()
            if config.USE_POSTGRES:
                from db.connection import close_pool
                close_pool()
            logger.info("[server] services stopped")

    application = FastAPI(
        title="Outing Planner API",
        version="1.0.0",
        description=(
            "Social itinerary planner: event discovery, ranking, LLM planning, "
            "human approval and automated booking, with live trace streaming."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Allow the web frontend (any origin during development)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(health.router,   prefix="/v1",          tags=["Health"])
    application.include_router(workflow.router, prefix="/v1/workflow", tags=["Workflow"])
    application.include_router(traces.router,   prefix="/v1/traces",   tags=["Traces"])
    return application


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
