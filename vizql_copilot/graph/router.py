"""
Routing logic for the orchestrator graph.

Determines which phase runs next based on what has been populated and
on the turn's abort signal.
"""

import logging
from typing import Literal, Optional

from vizql_copilot.graph.state import OrchestratorState
from vizql_copilot.shared.cancellation import AbortSignal, is_aborted


logger = logging.getLogger(__name__)

PhaseName = Literal[
    "triage",
    "metadata",
    "selector",
    "planner",
    "fetch",
    "summarize",
    "finish",
    "cancelled",
]

PHASE_NODES = ("triage", "metadata", "selector", "planner", "fetch", "summarize", "finish", "cancelled")


def route_next_phase(state: OrchestratorState, signal: Optional[AbortSignal] = None) -> PhaseName:
    """
    Determine the next phase to execute.

    Routing logic:
    1. Aborted signal or status "cancelled" -> cancelled
    2. Any other terminal status -> finish
    3. First unpopulated slot in phase order -> that phase
    4. Otherwise -> finish

    Args:
        state: Current orchestrator state
        signal: The turn's abort signal

    Returns:
        Name of the next node to execute
    """
    session_id = state.get("session_id", "unknown")
    status = state.get("status", "running")
    _log = f"[session={session_id}] [graph=orchestrator] [router=route_next_phase] "

    if status == "cancelled" or (status == "running" and is_aborted(signal)):
        logger.info(f"{_log}Routing to 'cancelled' | after={state.get('current_phase')}")
        return "cancelled"

    if status != "running":
        logger.info(f"{_log}Routing to 'finish' | status={status}")
        return "finish"

    if not state.get("triage_done"):
        target = "triage"
    elif state.get("normalized_fields") is None:
        target = "metadata"
    elif state.get("allowed_fields") is None:
        target = "selector"
    elif state.get("query_payload") is None:
        target = "planner"
    elif state.get("artifact_path") is None:
        target = "fetch"
    elif state.get("reply") is None:
        target = "summarize"
    else:
        target = "finish"

    logger.info(f"{_log}Routing to '{target}' | after={state.get('current_phase')}")
    return target
