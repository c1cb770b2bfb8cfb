"""FastAPI server for the clinic conversational agents.

Run with:
    uvicorn src.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import router
from src.bootstrap import build_app_components
from src.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build registries, engine, processor and orchestrators once
    and store them in app state."""
    logger.info("Building engine components…")
    components = build_app_components()
    application.state.processor = components.processor
    application.state.orchestrator = components.orchestrator
    application.state.confirmations = components.confirmations
    logger.info("Engine ready.")
    yield
    components.engine.shutdown()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Clinic Agents",
    description=(
        "Conversational agent orchestration for clinics: scheduling, "
        "billing and support modules behind one message webhook."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) to every request and response
    so webhook and cron log lines can be correlated."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Clinic Agents",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting Clinic Agents API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "src.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
