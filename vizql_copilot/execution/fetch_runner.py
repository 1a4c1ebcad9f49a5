"""
Fetch phase: compile, preflight, execute, persist.

Each attempt produces a query (the planned one first, then compiler
retries that see the accumulated feedback), validates it locally and
runs it against the datasource. Failures are tagged by where they
happened (builder, preflight, tableau) and fed into the next attempt.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from vizql_copilot.connector.base import DatasourceConnector, unwrap_json
from vizql_copilot.execution.error_scan import find_embedded_error
from vizql_copilot.execution.preflight import preflight_validate_query
from vizql_copilot.planning.plan_runner import build_compiler_messages, parse_compiler_output
from vizql_copilot.shared.artifacts import ArtifactStore, count_rows
from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.config import AppConfig, DEFAULT_CONFIG
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan
from vizql_copilot.shared.contracts.query_spec import QueryPayload, QuerySpec
from vizql_copilot.shared.errors import ErrorCode
from vizql_copilot.shared.events import EventBus
from vizql_copilot.shared.llm.client import AgentRunner, AgentSpec, extract_text
from vizql_copilot.shared.retry import (
    AttemptFailed,
    Feedback,
    RetryPolicy,
    attempt_with_feedback,
    feedback_json_hint,
)
from vizql_copilot.shared.schemas.session import TriageContext


logger = logging.getLogger(__name__)

SOURCE_CODES = {
    "builder": ErrorCode.BUILDER_VALIDATION,
    "preflight": ErrorCode.PREFLIGHT_VALIDATION,
    "tableau": ErrorCode.SOURCE_ERROR,
}


@dataclass
class FetchResult:
    fetched_summary: Optional[str] = None
    artifact_path: Optional[str] = None
    query: Optional[QueryPayload] = None
    rows: int = 0
    error: Optional[str] = None
    code: Optional[ErrorCode] = None
    cancelled: bool = False
    attempts: int = 0
    feedback: List[Feedback] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.artifact_path is not None


@dataclass
class _Fetched:
    query: QueryPayload
    data: Any


def summarize_result(data: Any) -> str:
    """Row and column summary such as 'rows=12; columns=Region, SUM(Sales)'."""
    rows = count_rows(data)
    summary = f"rows={rows}"
    records = data if isinstance(data, list) else None
    if isinstance(data, dict):
        for key in ("rows", "data", "results"):
            if isinstance(data.get(key), list):
                records = data[key]
                break
    if records and isinstance(records[0], dict):
        summary += f"; columns={', '.join(str(k) for k in records[0])}"
    return summary


class FetchRunner:
    """
    Bounded attempt loop for executing a query.

    Args:
        runner: Agent capability (query compiler retries)
        compiler_agent: The query-compiler AgentSpec
        connector: Datasource connector
        artifact_store: Where successful results are written
        events: Event bus for fetch:* events
        config: Supplies fetch_max_attempts and the connector timeout
    """

    def __init__(
        self,
        runner: AgentRunner,
        compiler_agent: AgentSpec,
        connector: DatasourceConnector,
        artifact_store: ArtifactStore,
        events: EventBus,
        config: AppConfig = DEFAULT_CONFIG,
    ):
        self._runner = runner
        self._compiler_agent = compiler_agent
        self._connector = connector
        self._store = artifact_store
        self._events = events
        self._config = config

    async def _compile(
        self,
        attempt: int,
        hint: Optional[str],
        message: str,
        datasource_luid: str,
        allowed_fields: Sequence[Dict[str, str]],
        analysis_plan: Optional[AnalysisPlan],
        step_query: Optional[QuerySpec],
        triage_context: Optional[TriageContext],
        field_aliases: Optional[Dict[str, str]],
        signal: Optional[AbortSignal],
    ) -> QueryPayload:
        messages = build_compiler_messages(
            message, datasource_luid, allowed_fields, analysis_plan, step_query,
            feedback=hint, attempt=attempt, triage_context=triage_context, field_aliases=field_aliases,
        )
        try:
            result = await run_cancelable(signal, lambda: self._runner.run(self._compiler_agent, messages))
        except TurnCancelled:
            raise
        except Exception as e:
            raise AttemptFailed("builder", f"query compiler failed: {e}")
        payload, error = parse_compiler_output(extract_text(result), datasource_luid)
        if payload is None:
            raise AttemptFailed("builder", error)
        return payload

    async def run(
        self,
        datasource_luid: str,
        message: str,
        allowed_fields: Sequence[Dict[str, str]],
        analysis_plan: Optional[AnalysisPlan] = None,
        triage_context: Optional[TriageContext] = None,
        planned_query: Optional[QueryPayload] = None,
        step_query: Optional[QuerySpec] = None,
        field_aliases: Optional[Dict[str, str]] = None,
        signal: Optional[AbortSignal] = None,
    ) -> FetchResult:
        """
        Execute the query for a turn, retrying with feedback.

        The first attempt uses `planned_query` when given; later attempts
        (or all of them, without a planned query) ask the compiler again.

        Returns:
            FetchResult with fetched_summary and artifact_path, or error, or
            cancelled=True. The error is the last feedback message verbatim.
        """
        start_time = time.perf_counter()
        max_attempts = self._config.fetch_max_attempts
        allowed_captions = {f["fieldCaption"] for f in allowed_fields}
        connector_calls = 0
        _log = f"[node=fetch] [luid={datasource_luid}] "

        if triage_context is not None and triage_context.brief_natural:
            message = f"{message}\n\n{triage_context.brief_natural}"

        self._events.emit("fetch:start", max_attempts=max_attempts)

        async def attempt(index: int, hint: Optional[str]) -> _Fetched:
            nonlocal connector_calls
            if index == 1 and planned_query is not None:
                payload = planned_query
            else:
                payload = await self._compile(
                    index, hint, message, datasource_luid, allowed_fields, analysis_plan, step_query,
                    triage_context, field_aliases, signal,
                )

            problems = preflight_validate_query(payload.query, allowed_captions)
            if problems:
                raise AttemptFailed("preflight", problems)

            query_wire = payload.query.to_wire()
            connector_calls += 1
            logger.info(f"{_log}Executing query | attempt={index}, fields={len(payload.query.fields)}")
            try:
                raw = await run_cancelable(
                    signal,
                    lambda: self._connector.query_datasource(
                        datasource_luid, query_wire, timeout_ms=self._config.tableau_client_timeout_ms
                    ),
                )
            except TurnCancelled:
                raise
            except Exception as e:
                raise AttemptFailed("tableau", str(e) or e.__class__.__name__)

            embedded = find_embedded_error(raw)
            if embedded:
                raise AttemptFailed("tableau", embedded, raw=raw)

            return _Fetched(query=payload, data=unwrap_json(raw))

        def on_retry(entry: Feedback) -> None:
            self._events.emit("fetch:retry", attempt=entry.attempt + 1, source=entry.source, message=entry.message)

        policy = RetryPolicy(max_attempts=max_attempts, build_hint=feedback_json_hint)
        try:
            outcome = await attempt_with_feedback(policy, attempt, on_retry=on_retry)
        except TurnCancelled:
            logger.info(f"{_log}Fetch cancelled | connector_calls={connector_calls}")
            return FetchResult(cancelled=True)

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        if outcome.value is None:
            last = outcome.last_failure
            code = SOURCE_CODES.get(last.source, ErrorCode.INTERNAL) if last else ErrorCode.INTERNAL
            logger.warning(
                f"{_log}Fetch failed | attempts={outcome.attempts}, connector_calls={connector_calls}, "
                f"error={(outcome.error or '')[:200]}"
            )
            self._events.emit("fetch:error", message=outcome.error or "fetch failed", code=code.value, duration_ms=duration_ms)
            return FetchResult(
                error=outcome.error,
                code=code,
                attempts=outcome.attempts,
                feedback=outcome.feedback,
            )

        fetched = outcome.value
        # Saved once, outside the attempt loop
        try:
            artifact = self._store.save(fetched.data)
        except (OSError, TypeError, ValueError) as e:
            error = f"failed to save query result: {e}"
            logger.error(f"{_log}Artifact save failed | attempts={outcome.attempts}, error={e}")
            self._events.emit("fetch:error", message=error, code=ErrorCode.INTERNAL.value, duration_ms=duration_ms)
            return FetchResult(
                error=error,
                code=ErrorCode.INTERNAL,
                query=fetched.query,
                rows=count_rows(fetched.data),
                attempts=outcome.attempts,
                feedback=outcome.feedback,
            )

        summary = summarize_result(fetched.data)
        logger.info(f"{_log}Fetch complete | attempts={outcome.attempts}, {summary}, duration={duration_ms}ms")
        self._events.emit(
            "fetch:done",
            summary=summary,
            artifact=artifact.rel_path,
            attempts=outcome.attempts,
            duration_ms=duration_ms,
        )
        return FetchResult(
            fetched_summary=summary,
            artifact_path=artifact.rel_path,
            query=fetched.query,
            rows=count_rows(fetched.data),
            attempts=outcome.attempts,
            feedback=outcome.feedback,
        )
