"""
Orchestrator graph construction.

Builds the per-turn graph that sequences triage -> metadata -> selector ->
planner -> fetch -> summarize. Phase nodes are thin wrappers that call the
phase objects held by a TurnContext and translate their structured results
into state updates; the router decides what runs next and diverts to the
`cancelled` node as soon as the turn's signal fires.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from langgraph.graph import END, StateGraph

from vizql_copilot.connector.base import DatasourceConnector
from vizql_copilot.execution.fetch_runner import FetchRunner
from vizql_copilot.graph.router import PHASE_NODES, route_next_phase
from vizql_copilot.graph.state import OrchestratorState, create_initial_state
from vizql_copilot.metadata.cache import MetadataCache
from vizql_copilot.planning.plan_runner import PlanRunner
from vizql_copilot.selection.selector import FieldSelector
from vizql_copilot.shared.artifacts import ArtifactStore
from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.config import AppConfig, DEFAULT_CONFIG
from vizql_copilot.shared.contracts.events import OrchestratorEvent
from vizql_copilot.shared.errors import AppError, ErrorCode, format_for_user, precondition_failed
from vizql_copilot.shared.events import EventBus, EventSink
from vizql_copilot.shared.llm.agents import (
    build_agent,
    build_analysis_planner_agent,
    build_field_selector_agent,
    build_lightweight_summarizer_agent,
    build_query_compiler_agent,
    build_triage_agent,
)
from vizql_copilot.shared.llm.client import AgentRunner, AgentSpec, LoggingAgentRunner
from vizql_copilot.shared.logging.analysis_log import get_or_create_analysis_log
from vizql_copilot.shared.logging.config import log_phase_transition
from vizql_copilot.shared.schemas.session import SessionMetadata, SessionState, create_initial_session_state
from vizql_copilot.summary.code_interpreter import CodeExecutionSummarizer, OpenAICodeInterpreter
from vizql_copilot.summary.lightweight import LightweightSummarizer
from vizql_copilot.summary.runner import SummarizeRunner
from vizql_copilot.triage.phase import run_triage


logger = logging.getLogger(__name__)

CANCELLED_REPLY = "Request cancelled."


@dataclass
class TurnContext:
    """Everything a turn's phase nodes need besides the graph state."""

    config: AppConfig
    events: EventBus
    signal: AbortSignal
    runner: AgentRunner
    triage_agent: AgentSpec
    metadata_cache: MetadataCache
    selector: FieldSelector
    plan_runner: PlanRunner
    fetch_runner: FetchRunner
    summarize_runner: SummarizeRunner
    start_time: float = field(default_factory=time.perf_counter)


@dataclass
class TurnResult:
    reply: str
    status: str
    session: SessionState
    artifact_paths: List[str] = field(default_factory=list)
    events: List[OrchestratorEvent] = field(default_factory=list)


def _prefix(state: OrchestratorState, node: str) -> str:
    return f"[session={state.get('session_id', 'unknown')}] [graph=orchestrator] [node={node}] "


def _cancelled(phase: str) -> Dict[str, Any]:
    return {"status": "cancelled", "cancelled_phase": phase, "current_phase": phase}


async def _triage_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    _log = _prefix(state, "triage")
    log_phase_transition("triage", state)
    try:
        outcome = await run_triage(
            ctx.runner,
            ctx.triage_agent,
            state["message"],
            ctx.events,
            history=state.get("history") or [],
            catalog=state.get("session_fields"),
            signal=ctx.signal,
        )
    except TurnCancelled:
        return _cancelled("triage")

    logger.info(
        f"{_log}Triage complete | needs_data={outcome.needs_data}, "
        f"required={outcome.context.required_fields}, ends_turn={outcome.status is not None}"
    )
    update: Dict[str, Any] = {
        "triage_done": True,
        "triage_context": outcome.context,
        "current_phase": "triage",
    }
    if outcome.status is not None:
        update["status"] = outcome.status
        update["reply"] = outcome.reply
    return update


async def _metadata_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    _log = _prefix(state, "metadata")
    luid = state["datasource_luid"]
    log_phase_transition("metadata", state)
    start_time = time.perf_counter()
    ctx.events.emit("metadata:start", datasource_luid=luid)

    session_fields = state.get("session_fields")
    if session_fields:
        logger.info(f"{_log}Reusing session catalog | fields={len(session_fields)}")
        ctx.events.emit("metadata:done", count=len(session_fields), source="session", duration_ms=0)
        return {"normalized_fields": list(session_fields), "current_phase": "metadata"}

    try:
        cached = await run_cancelable(ctx.signal, lambda: ctx.metadata_cache.get_cached(luid))
    except TurnCancelled:
        return _cancelled("metadata")

    duration_ms = int((time.perf_counter() - start_time) * 1000)
    if cached is None or not cached.fields:
        cause = ctx.metadata_cache.last_error or "metadata unavailable"
        message = f"No fields available for datasource {luid}: {cause}"
        logger.warning(f"{_log}{message}")
        ctx.events.emit("metadata:error", message=message, code=ErrorCode.DEPENDENCY_FAILED.value, duration_ms=duration_ms)
        err = AppError(
            ErrorCode.DEPENDENCY_FAILED,
            message,
            required=["datasourceLuid"],
            next_action="Check the datasource LUID and the Tableau connection, then retry.",
        )
        return {"status": "error", "reply": format_for_user(err), "current_phase": "metadata"}

    logger.info(f"{_log}Catalog loaded | fields={len(cached.fields)}, source={cached.source}")
    ctx.events.emit("metadata:done", count=len(cached.fields), source=cached.source, duration_ms=duration_ms)
    return {"normalized_fields": list(cached.fields), "current_phase": "metadata"}


async def _selector_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    _log = _prefix(state, "selector")
    log_phase_transition("selector", state)
    triage = state.get("triage_context")
    try:
        selection = await ctx.selector.select(
            state["message"],
            state.get("normalized_fields") or [],
            required_fields=(triage.required_fields if triage else None),
            filter_hints=(triage.filter_hints if triage else None),
            max_list=ctx.config.selector_max_fields,
            signal=ctx.signal,
        )
    except TurnCancelled:
        return _cancelled("selector")

    if selection.needs_clarification:
        logger.info(f"{_log}Clarification needed | missing={selection.missing_required}")
        ctx.events.emit(
            "clarify:request",
            text=selection.clarify,
            missing_fields=selection.missing_required,
            candidates=selection.candidates,
        )
        return {"status": "clarify", "reply": selection.clarify, "current_phase": "selector"}

    return {
        "allowed_fields": selection.allowed_fields,
        "field_aliases": selection.suggested_aliases,
        "current_phase": "selector",
    }


async def _planner_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    _log = _prefix(state, "planner")
    log_phase_transition("planner", state)
    try:
        plan = await ctx.plan_runner.run(
            state["message"],
            state["datasource_luid"],
            state.get("allowed_fields") or [],
            triage_context=state.get("triage_context"),
            field_aliases=state.get("field_aliases"),
            signal=ctx.signal,
        )
    except TurnCancelled:
        return _cancelled("planner")

    if not plan.ok:
        logger.warning(f"{_log}Planning failed | code={plan.code.value if plan.code else None}")
        return {
            "status": "error",
            "reply": plan.error or "planning failed",
            "errors": [plan.error or "planning failed"],
            "current_phase": "planner",
        }

    logger.info(f"{_log}Plan ready | summary={plan.query_summary}, attempts={plan.attempts}")
    return {
        "analysis_plan": plan.analysis_plan,
        "step_query": plan.step_query,
        "query_payload": plan.query_payload,
        "current_phase": "planner",
    }


async def _fetch_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    _log = _prefix(state, "fetch")
    log_phase_transition("fetch", state)
    result = await ctx.fetch_runner.run(
        state["datasource_luid"],
        state["message"],
        state.get("allowed_fields") or [],
        analysis_plan=state.get("analysis_plan"),
        triage_context=state.get("triage_context"),
        planned_query=state.get("query_payload"),
        step_query=state.get("step_query"),
        field_aliases=state.get("field_aliases"),
        signal=ctx.signal,
    )
    if result.cancelled:
        return _cancelled("fetch")
    if not result.ok:
        logger.warning(f"{_log}Fetch failed | attempts={result.attempts}")
        return {
            "status": "error",
            "reply": result.error or "query failed",
            "errors": [result.error or "query failed"],
            "current_phase": "fetch",
        }
    return {
        "artifact_path": result.artifact_path,
        "fetched_summary": result.fetched_summary,
        "query_payload": result.query,
        "current_phase": "fetch",
    }


async def _summarize_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    log_phase_transition("summarize", state)
    result = await ctx.summarize_runner.summarize(
        state["message"],
        [state["artifact_path"]],
        analysis_plan=state.get("analysis_plan"),
        signal=ctx.signal,
    )
    if result.cancelled:
        return _cancelled("summarize")
    return {"reply": result.reply, "status": "ok", "current_phase": "summarize"}


async def _finish_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    _log = _prefix(state, "finish")
    status = state.get("status", "running")
    if status == "running":
        status = "ok"
    reply = state.get("reply") or ""
    duration_ms = int((time.perf_counter() - ctx.start_time) * 1000)
    logger.info(f"{_log}Turn complete | status={status}, errors={len(state.get('errors', []))} -> END")
    ctx.events.emit("final", reply=reply, status=status, duration_ms=duration_ms)
    return {"status": status, "reply": reply, "current_phase": "finish"}


async def _cancelled_node(state: OrchestratorState, ctx: TurnContext) -> Dict[str, Any]:
    _log = _prefix(state, "cancelled")
    phase = state.get("cancelled_phase") or state.get("current_phase")
    logger.info(f"{_log}Turn cancelled | phase={phase}, reason={ctx.signal.reason}")
    ctx.events.emit("cancelled", phase=phase, reason=ctx.signal.reason)
    return {"status": "cancelled", "reply": CANCELLED_REPLY, "cancelled_phase": phase}


_NODES: Dict[str, Callable[[OrchestratorState, TurnContext], Awaitable[Dict[str, Any]]]] = {
    "triage": _triage_node,
    "metadata": _metadata_node,
    "selector": _selector_node,
    "planner": _planner_node,
    "fetch": _fetch_node,
    "summarize": _summarize_node,
    "finish": _finish_node,
    "cancelled": _cancelled_node,
}


def _bind(node: Callable[[OrchestratorState, TurnContext], Awaitable[Dict[str, Any]]], ctx: TurnContext):
    async def bound(state: OrchestratorState) -> Dict[str, Any]:
        return await node(state, ctx)

    bound.__name__ = node.__name__.lstrip("_")
    return bound


def create_orchestrator_graph(ctx: TurnContext):
    """
    Create and compile the orchestrator graph for one turn.

    The graph structure is:
        Entry -> route_next_phase
          -> "triage" | "metadata" | "selector" | "planner" | "fetch" | "summarize"
             -> route_next_phase (again after every phase)
          -> "finish"    -> END
          -> "cancelled" -> END

    Returns:
        Compiled LangGraph application ready for execution.
    """
    graph = StateGraph(OrchestratorState)

    for name, node in _NODES.items():
        graph.add_node(name, _bind(node, ctx))

    def router(state: OrchestratorState) -> str:
        return route_next_phase(state, ctx.signal)

    routes = {name: name for name in PHASE_NODES}
    graph.set_conditional_entry_point(router, routes)
    for name in ("triage", "metadata", "selector", "planner", "fetch", "summarize"):
        graph.add_conditional_edges(name, router, routes)

    graph.add_edge("finish", END)
    graph.add_edge("cancelled", END)

    return graph.compile()


class Orchestrator:
    """
    Runs turns against one datasource connector.

    Constructed once per process; each run_turn() builds its own event
    bus, phase objects and graph around the shared cache and store.

    Args:
        config: Application configuration
        runner: Agent capability
        connector: Datasource connector
        metadata_cache: Shared catalog cache (created from config if omitted)
        artifact_store: Shared artifact store (created from config if omitted)
        code_interpreter: Heavyweight summarizer (Responses API by default)
    """

    def __init__(
        self,
        config: AppConfig = DEFAULT_CONFIG,
        runner: Optional[AgentRunner] = None,
        connector: Optional[DatasourceConnector] = None,
        metadata_cache: Optional[MetadataCache] = None,
        artifact_store: Optional[ArtifactStore] = None,
        code_interpreter: Optional[CodeExecutionSummarizer] = None,
    ):
        if runner is None or connector is None:
            raise ValueError("Orchestrator requires an agent runner and a datasource connector")
        self.config = config
        self._runner = runner
        self._connector = connector
        self.metadata_cache = metadata_cache or MetadataCache(
            connector,
            site_name=config.site_name,
            logs_dir=config.logs_dir,
            ttl_ms=config.metadata_cache_ttl_ms,
        )
        self.artifact_store = artifact_store or ArtifactStore(logs_dir=config.logs_dir)
        self._code_interpreter = code_interpreter or OpenAICodeInterpreter(
            build_agent("analyst", config),
            self.artifact_store,
            delete_files_after=config.ci_delete_files_after,
        )

    async def aclose(self) -> None:
        """Close the connector when it holds resources (e.g. the MCP subprocess)."""
        close = getattr(self._connector, "close", None)
        if close is not None:
            await close()

    def _turn_context(self, events: EventBus, signal: AbortSignal, runner: AgentRunner) -> TurnContext:
        config = self.config
        compiler_agent = build_query_compiler_agent(config)
        lightweight = LightweightSummarizer(
            runner,
            build_lightweight_summarizer_agent(config),
            self.artifact_store,
            events,
            char_budget=config.lightweight_char_budget,
        )
        return TurnContext(
            config=config,
            events=events,
            signal=signal,
            runner=runner,
            triage_agent=build_triage_agent(config),
            metadata_cache=self.metadata_cache,
            selector=FieldSelector(runner, build_field_selector_agent(config), events),
            plan_runner=PlanRunner(runner, build_analysis_planner_agent(config), compiler_agent, events, config),
            fetch_runner=FetchRunner(runner, compiler_agent, self._connector, self.artifact_store, events, config),
            summarize_runner=SummarizeRunner(lightweight, self._code_interpreter, self.artifact_store, events, config),
        )

    async def run_turn(
        self,
        message: str,
        datasource_luid: str,
        session: Optional[SessionState] = None,
        on_event: Optional[EventSink] = None,
        signal: Optional[AbortSignal] = None,
        session_id: Optional[str] = None,
    ) -> TurnResult:
        """
        Run one turn.

        Args:
            message: The user's request
            datasource_luid: Datasource to query
            session: Prior session state (never mutated)
            on_event: Optional sink receiving every event as it is emitted
            signal: Optional abort signal for the turn
            session_id: Enables the per-session analysis log when given

        Returns:
            TurnResult with the reply, status and the new session snapshot
        """
        session = session or create_initial_session_state()
        message = (message or "").strip()
        datasource_luid = (datasource_luid or "").strip()

        if not message or not datasource_luid:
            required = [name for name, value in (("message", message), ("datasourceLuid", datasource_luid)) if not value]
            err = precondition_failed(
                "A message and a datasource LUID are required.",
                required=required,
                next_action="Provide the missing inputs and retry.",
            )
            return TurnResult(reply=format_for_user(err), status="error", session=session)

        start_time = time.perf_counter()
        analysis_log = get_or_create_analysis_log(session_id, self.config.logs_dir) if session_id else None
        log_id = session_id or "unknown"
        _log = f"[session={log_id}] [graph=orchestrator] "
        events = EventBus(on_event, analysis_log, log_id)
        signal = signal or AbortSignal()
        runner = LoggingAgentRunner(self._runner, analysis_log, log_id)
        ctx = self._turn_context(events, signal, runner)

        session_fields = None
        if session.metadata is not None and session.metadata.datasource_luid == datasource_luid:
            session_fields = list(session.metadata.fields) or None

        initial = create_initial_state(
            log_id,
            message,
            datasource_luid,
            history=session.history_messages(),
            session_fields=session_fields,
        )
        session = session.with_turn("user", message)

        logger.info(f"{_log}Starting turn | luid={datasource_luid}, history={len(initial['history'])}")
        try:
            final_state = await create_orchestrator_graph(ctx).ainvoke(initial)
        except Exception as e:
            logger.exception(f"{_log}Turn failed: {e}")
            err = AppError(ErrorCode.INTERNAL, f"internal error: {e}", next_action="Retry the request.")
            reply = format_for_user(err)
            events.emit("error", message=str(e), code=ErrorCode.INTERNAL.value)
            final_state = {**initial, "status": "error", "reply": reply}

        status = final_state.get("status") or "error"
        reply = final_state.get("reply") or ""
        artifact_path = final_state.get("artifact_path")

        updates: Dict[str, Any] = {}
        fields = final_state.get("normalized_fields")
        if fields:
            updates["metadata"] = SessionMetadata(datasource_luid=datasource_luid, fields=tuple(fields))
        if final_state.get("triage_context") is not None:
            updates["triage_context"] = final_state["triage_context"]
        if final_state.get("analysis_plan") is not None:
            updates["analysis_plan"] = final_state["analysis_plan"]
        if artifact_path:
            updates["artifacts"] = session.artifacts + (artifact_path,)
        new_session = session.model_copy(update=updates).with_turn("assistant", reply)

        duration_ms = (time.perf_counter() - start_time) * 1000
        if analysis_log is not None:
            analysis_log.log_turn_summary(status, duration_ms)
        logger.info(f"{_log}Turn finished | status={status}, duration={duration_ms:.0f}ms, events={len(events.events)}")

        return TurnResult(
            reply=reply,
            status=status,
            session=new_session,
            artifact_paths=[artifact_path] if artifact_path else [],
            events=list(events.events),
        )
