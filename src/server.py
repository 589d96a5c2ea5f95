"""FastAPI server for the Poppa concierge backend.

Run with:
    uvicorn src.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import router
from src.api.users import router as users_router
from src.config import CORS_ORIGINS, IS_PRODUCTION, SERVER_HOST, SERVER_PORT
from src.services.agent_client import AgentClient
from src.services.bridge import WebhookBridge
from src.services.graph_store import GraphStore
from src.services.memory import ConversationMemory
from src.services.messaging import TwilioMessenger
from src.services.metrics import metrics
from src.services.notifications import NotificationDispatcher

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build every client once, wire the orchestrators, close on shutdown."""
    logger.info("Initializing services…")
    store = GraphStore().init()
    memory = ConversationMemory()
    messenger = TwilioMessenger()
    agent = AgentClient()

    state = application.state
    state.store = store
    state.memory = memory
    state.messenger = messenger
    state.agent = agent
    state.dispatcher = NotificationDispatcher(store, memory, messenger)
    state.bridge = WebhookBridge(store, memory, messenger, agent)
    logger.info("Services ready.")
    yield

    logger.info("Shutting down services…")
    for service in (agent, messenger, memory, store):
        try:
            service.close()
        except Exception:
            logger.exception("Error closing %s", type(service).__name__)
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Poppa Concierge",
    description=(
        "WhatsApp concierge for elders and their caretakers: medication "
        "reminders, confirmations and an agent-backed conversation bridge."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (the dashboard calls the CRUD routes) ──────────────────────
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
    """Tag each request with ``X-Request-ID`` and log its outcome."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "[%s] %s %s -> %d (%.0f ms)",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(users_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Poppa Concierge",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Poppa API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "src.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=not IS_PRODUCTION,
    )
