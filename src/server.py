"""FastAPI server for the Repair ASAP lead bot.

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
from fastapi.responses import JSONResponse

from src.agent import create_lead_agent
from src.api.routes import router
from src.config import CORS_ORIGINS, LOG_LEVEL, SERVER_HOST, SERVER_PORT
from src.orchestrator import TurnError
from src.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the clients and the photo cache once; close them on shutdown."""
    logger.info("Wiring lead agent…")
    application.state.agent = create_lead_agent()
    logger.info("Agent ready.")
    yield
    logger.info("Shutting down: draining side effects and closing clients")
    await application.state.agent.aclose()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Repair ASAP Lead Bot",
    description=(
        "Website chat assistant for Repair ASAP: qualifies handyman jobs, "
        "captures leads into the CRM and books appointments."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (website widget) ────────────────────────────────────────────
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
    """Attach a request ID to every request for log correlation.

    The ID doubles as the turn's correlation id: it is written into the
    lead row and returned in ``X-Request-ID`` so support can find the
    matching log lines.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Turn errors → JSON ───────────────────────────────────────────────
@app.exception_handler(TurnError)
async def turn_error_handler(request: Request, exc: TurnError) -> JSONResponse:
    """Log the internal detail; send the caller only the code and an apology."""
    request_id = getattr(request.state, "request_id", "-")
    logger.error("[%s] %s: %s", request_id, exc.code, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.user_message, "request_id": request_id},
        headers={"X-Request-ID": request_id},
    )


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Repair ASAP Lead Bot",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Repair ASAP API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "src.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
