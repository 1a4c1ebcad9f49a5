"""
FastAPI endpoints for the orchestrator.

Provides a JSON endpoint that runs one turn and returns the reply plus
its events, and a server-sent-events endpoint that streams events while
the turn runs.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from vizql_copilot.connector.tableau import TableauMcpConnector
from vizql_copilot.graph.build import Orchestrator, TurnResult
from vizql_copilot.shared.cancellation import AbortSignal
from vizql_copilot.shared.config import load_config, tableau_mcp_prerequisites
from vizql_copilot.shared.contracts.events import OrchestratorEvent
from vizql_copilot.shared.errors import precondition_failed
from vizql_copilot.shared.llm.client import OpenAIAgentRunner
from vizql_copilot.shared.messages import format_event_message
from vizql_copilot.shared.schemas.session import SessionState, create_initial_session_state


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orchestrate", tags=["orchestrate"])

# In-memory session storage (use a persistent store in production)
_sessions: Dict[str, SessionState] = {}

_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """
    Process-wide orchestrator, built on first use.

    Raises:
        AppError: precondition_failed when the Tableau MCP environment is incomplete
    """
    global _orchestrator
    if _orchestrator is None:
        config = load_config()
        missing = tableau_mcp_prerequisites()
        if missing:
            raise precondition_failed(
                "Tableau MCP is not configured.",
                required=missing,
                next_action="Set the listed environment variables and restart the server.",
            )
        connector = TableauMcpConnector(default_timeout_ms=config.tableau_client_timeout_ms)
        _orchestrator = Orchestrator(config, OpenAIAgentRunner(), connector)
    return _orchestrator


async def close_orchestrator() -> None:
    """Close the process-wide orchestrator's connector, if one was built."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.aclose()
        _orchestrator = None


# ============================================================================
# Request/Response Models
# ============================================================================


class OrchestrateRequest(BaseModel):
    """Request to run one turn."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(description="The user's analytics question")
    datasource_luid: str = Field(alias="datasourceLuid", description="Datasource to query")
    session_id: Optional[str] = Field(default=None, description="Existing session to continue")


class OrchestrateResponse(BaseModel):
    """Result of one turn."""

    session_id: str
    reply: str
    status: str = Field(description="ok | clarify | error | cancelled")
    artifacts: List[str] = Field(default_factory=list)
    events: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Helpers
# ============================================================================


def _format_sse(data: Dict[str, Any], event: Optional[str] = None) -> str:
    """Formats a dictionary into a server-sent event string."""
    msg = ""
    if event is not None:
        msg += f"event: {event}\n"
    msg += f"data: {json.dumps(data, ensure_ascii=False, default=str)}\n"
    return f"{msg}\n"


def _session_for(session_id: Optional[str]) -> Tuple[str, SessionState]:
    if session_id and session_id in _sessions:
        return session_id, _sessions[session_id]
    return session_id or str(uuid.uuid4()), create_initial_session_state()


def _store_result(session_id: str, result: TurnResult) -> None:
    _sessions[session_id] = result.session


# ============================================================================
# Endpoints
# ============================================================================


@router.post("", response_model=OrchestrateResponse)
async def orchestrate(request: OrchestrateRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """
    Run one turn and return the reply with the full event list.
    """
    session_id, session = _session_for(request.session_id)
    _log = f"[session={session_id}] [graph=orchestrator] [api=orchestrate] "
    logger.info(f"{_log}Turn starting | luid={request.datasource_luid}, history={len(session.history)}")

    result = await orchestrator.run_turn(
        request.message,
        request.datasource_luid,
        session=session,
        session_id=session_id,
    )
    _store_result(session_id, result)

    logger.info(f"{_log}Turn finished | status={result.status}, events={len(result.events)}")
    return OrchestrateResponse(
        session_id=session_id,
        reply=result.reply,
        status=result.status,
        artifacts=result.artifact_paths,
        events=[e.to_dict() for e in result.events],
    )


@router.get("/stream")
async def orchestrate_stream(
    request: Request,
    message: str = Query(...),
    datasource_luid: str = Query(..., alias="datasourceLuid"),
    session_id: Optional[str] = Query(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Run one turn, streaming every event as `data: <json>` followed by a
    `message` narration event. A client disconnect aborts the turn.
    """
    session_id, session = _session_for(session_id)
    _log = f"[session={session_id}] [graph=orchestrator] [api=stream] "
    signal = AbortSignal()
    queue: "asyncio.Queue[OrchestratorEvent]" = asyncio.Queue()
    locale = orchestrator.config.locale

    async def stream_generator():
        task = asyncio.ensure_future(
            orchestrator.run_turn(
                message,
                datasource_luid,
                session=session,
                on_event=queue.put_nowait,
                signal=signal,
                session_id=session_id,
            )
        )
        try:
            yield _format_sse({"session_id": session_id}, "session")
            while True:
                if await request.is_disconnected():
                    logger.info(f"{_log}Client disconnected; aborting turn")
                    signal.abort("client disconnected")
                    break
                if task.done() and queue.empty():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.25)
                except asyncio.TimeoutError:
                    continue
                yield _format_sse(event.to_dict())
                text = format_event_message(event, locale)
                if text:
                    yield _format_sse({"type": event.type, "text": text}, "message")

            result = await task
            _store_result(session_id, result)
            yield _format_sse(
                {"session_id": session_id, "reply": result.reply, "status": result.status},
                "done",
            )
        finally:
            if not task.done():
                signal.abort("stream closed")
                try:
                    await task
                except Exception as e:
                    logger.warning(f"{_log}Turn ended with error after stream closed: {e}")

    return StreamingResponse(stream_generator(), media_type="text/event-stream")


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    """Conversation history for a session (empty for unknown sessions)."""
    session = _sessions.get(session_id)
    return {
        "session_id": session_id,
        "history": session.history_messages() if session else [],
        "artifacts": list(session.artifacts) if session else [],
    }
