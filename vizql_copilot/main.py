"""
FastAPI application entry point.

Configures process logging, mounts the orchestrator router, renders
AppError as a turn-shaped reply and closes the datasource connector on
shutdown.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vizql_copilot.graph.orchestrator_api import close_orchestrator
from vizql_copilot.graph.orchestrator_api import router as orchestrator_router
from vizql_copilot.shared.errors import AppError, ErrorCode, format_for_user
from vizql_copilot.shared.logging.config import setup_logging


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-35s | %(message)s"

QUIET_LOGGERS = ("httpcore", "httpx", "openai", "mcp")


def configure_logging() -> None:
    """
    Process-wide logging: plain text to stdout at LOG_LEVEL (default INFO),
    plus JSON lines for the package logger when LOG_JSON is set.
    """
    level_name = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if os.environ.get("LOG_JSON", "").strip().lower() in ("1", "true", "yes"):
        setup_logging(level=level, log_file=os.environ.get("LOG_FILE") or None)


configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # The MCP subprocess lives as long as the orchestrator
    await close_orchestrator()


app = FastAPI(
    title="VizQL Copilot",
    description="Natural-language analytics over Tableau datasources, orchestrated with LangGraph",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orchestrator_router)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Render AppError as a turn-shaped reply."""
    status_code = 412 if exc.code == ErrorCode.PRECONDITION_FAILED else 500
    return JSONResponse(
        status_code=status_code,
        content={"reply": format_for_user(exc), "status": "error", "code": exc.code.value},
    )


@app.get("/")
async def root():
    return {
        "name": "VizQL Copilot",
        "version": "0.1.0",
        "endpoints": {
            "orchestrate": "/api/orchestrate",
            "stream": "/api/orchestrate/stream",
            "sessions": "/api/orchestrate/sessions/{session_id}",
        },
    }


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", "8000")))
