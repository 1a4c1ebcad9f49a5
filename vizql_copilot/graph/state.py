"""
Orchestrator state schema.

Defines the per-turn state that flows through the orchestrator graph.
Each phase fills its own slot; the router picks the next phase from which
slots are populated and from `status`.
"""

from typing import Annotated, Dict, List, Optional, TypedDict
import operator

from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan
from vizql_copilot.shared.contracts.query_spec import QueryPayload, QuerySpec
from vizql_copilot.shared.schemas.session import NormalizedField, TriageContext


class OrchestratorState(TypedDict):
    """
    State schema for the orchestrator graph.

    `status` is "running" until a phase ends the turn with "ok",
    "clarify", "error" or "cancelled".
    """

    # Turn input
    session_id: str
    message: str
    datasource_luid: str
    history: List[Dict[str, str]]
    session_fields: Optional[List[NormalizedField]]

    # Phase handoff slots (populated as phases complete)
    triage_done: bool
    triage_context: Optional[TriageContext]
    normalized_fields: Optional[List[NormalizedField]]
    allowed_fields: Optional[List[Dict[str, str]]]
    field_aliases: Optional[Dict[str, str]]
    analysis_plan: Optional[AnalysisPlan]
    step_query: Optional[QuerySpec]
    query_payload: Optional[QueryPayload]
    fetched_summary: Optional[str]
    artifact_path: Optional[str]

    # Outcome
    status: str
    reply: Optional[str]
    cancelled_phase: Optional[str]

    # Tracking
    current_phase: str
    errors: Annotated[List[str], operator.add]


def create_initial_state(
    session_id: str,
    message: str,
    datasource_luid: str,
    history: Optional[List[Dict[str, str]]] = None,
    session_fields: Optional[List[NormalizedField]] = None,
) -> OrchestratorState:
    return OrchestratorState(
        session_id=session_id,
        message=message,
        datasource_luid=datasource_luid,
        history=list(history or []),
        triage_done=False,
        triage_context=None,
        session_fields=session_fields,
        normalized_fields=None,
        allowed_fields=None,
        field_aliases=None,
        analysis_plan=None,
        step_query=None,
        query_payload=None,
        fetched_summary=None,
        artifact_path=None,
        status="running",
        reply=None,
        cancelled_phase=None,
        current_phase="start",
        errors=[],
    )
