"""
Two-stage planning: analysis plan, then compiled query.

The analysis stage decides what to analyze and proposes a step query; it
is retried once with a targeted hint when its output fails validation.
The compile stage turns the step query into an executable QueryPayload in
a single attempt. Execution-time compiler retries belong to FetchRunner.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from vizql_copilot.execution.preflight import preflight_validate_query
from vizql_copilot.planning.hints import (
    NOT_JSON_HINT,
    format_retry_hint,
    hints_from_problems,
    hints_from_validation_error,
)
from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.config import AppConfig, DEFAULT_CONFIG
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan, AnalysisPlannerOutput
from vizql_copilot.shared.contracts.query_spec import DatasourceRef, QueryPayload, QuerySpec
from vizql_copilot.shared.errors import ErrorCode
from vizql_copilot.shared.events import EventBus
from vizql_copilot.shared.llm.client import (
    AgentResult,
    AgentRunner,
    AgentSpec,
    context_block,
    extract_text,
    parse_json_object,
    system_msg,
    user_msg,
)
from vizql_copilot.shared.retry import AttemptFailed, Feedback, RetryPolicy, attempt_with_feedback
from vizql_copilot.shared.schemas.session import TriageContext


logger = logging.getLogger(__name__)


@dataclass
class PlanResult:
    analysis_plan: Optional[AnalysisPlan] = None
    step_query: Optional[QuerySpec] = None
    query_payload: Optional[QueryPayload] = None
    query_summary: str = ""
    error: Optional[str] = None
    code: Optional[ErrorCode] = None
    attempts: int = 0
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.query_payload is not None


def _add_usage(total: Dict[str, int], usage: Optional[Dict[str, int]]) -> None:
    for key, value in (usage or {}).items():
        if isinstance(value, int):
            total[key] = total.get(key, 0) + value


def summarize_query(query: Optional[QuerySpec]) -> str:
    """Compact narration such as 'SUM(Sales) from 2024-01-01 to 2024-12-31'."""
    if query is None or not query.fields:
        return ""
    first = query.fields[0]
    text = f"{first.function}({first.field_caption})" if first.function else first.field_caption
    for flt in query.filters:
        wire = flt.to_wire()
        if wire.get("filterType") == "QUANTITATIVE_DATE":
            lo, hi = wire.get("minDate"), wire.get("maxDate")
            if lo and hi:
                return f"{text} from {lo} to {hi}"
            if lo:
                return f"{text} since {lo}"
            if hi:
                return f"{text} until {hi}"
        if wire.get("filterType") == "DATE":
            range_type = wire.get("dateRangeType", "")
            period = str(wire.get("periodType", "")).lower()
            if range_type in ("LASTN", "NEXTN") and wire.get("rangeN"):
                return f"{text} for the {range_type[:4].lower()} {wire['rangeN']} {period}"
            if range_type:
                return f"{text} for {range_type.lower()} {period}".rstrip()
    return text


def _retry_hint(feedback: List[Feedback]) -> Optional[str]:
    last = feedback[-1]
    return format_retry_hint(last.raw if isinstance(last.raw, list) else [last.message])


def _is_validation_failure(failure: AttemptFailed) -> bool:
    return failure.source == "builder"


class PlanRunner:
    """
    Runs the analysis and compile stages for one turn.

    Args:
        runner: Agent capability
        analysis_agent: The analysis-planner AgentSpec
        compiler_agent: The query-compiler AgentSpec
        events: Event bus for analysis:* and compile:* events
        config: Supplies analysis_max_attempts
    """

    def __init__(
        self,
        runner: AgentRunner,
        analysis_agent: AgentSpec,
        compiler_agent: AgentSpec,
        events: EventBus,
        config: AppConfig = DEFAULT_CONFIG,
    ):
        self._runner = runner
        self._analysis_agent = analysis_agent
        self._compiler_agent = compiler_agent
        self._events = events
        self._config = config

    async def _call(self, agent: AgentSpec, messages, signal: Optional[AbortSignal]) -> AgentResult:
        return await run_cancelable(signal, lambda: self._runner.run(agent, messages))

    async def run(
        self,
        message: str,
        datasource_luid: str,
        allowed_fields: Sequence[Dict[str, str]],
        triage_context: Optional[TriageContext] = None,
        field_aliases: Optional[Dict[str, str]] = None,
        signal: Optional[AbortSignal] = None,
    ) -> PlanResult:
        """
        Produce a validated analysis plan and an executable query payload.

        Returns:
            PlanResult; on failure `error` and `code` are set

        Raises:
            TurnCancelled: If the signal fires during either stage
        """
        result = PlanResult()
        analysis = await self._analysis_stage(message, datasource_luid, allowed_fields, triage_context, signal, result)
        if analysis is None:
            return result
        result.analysis_plan = analysis.analysis_plan
        result.step_query = analysis.query

        if signal is not None:
            signal.raise_if_aborted()
        await self._compile_stage(
            message, datasource_luid, allowed_fields, analysis, triage_context, field_aliases, signal, result
        )
        return result

    async def _analysis_stage(
        self,
        message: str,
        datasource_luid: str,
        allowed_fields: Sequence[Dict[str, str]],
        triage_context: Optional[TriageContext],
        signal: Optional[AbortSignal],
        result: PlanResult,
    ) -> Optional[AnalysisPlannerOutput]:
        start_time = time.perf_counter()
        allowed_captions = {f["fieldCaption"] for f in allowed_fields}
        self._events.emit("analysis:start", attempt=1)

        base_messages = [
            user_msg(message),
            system_msg(f"datasourceLuid={datasource_luid}"),
            context_block("ALLOWED_FIELDS_JSON", list(allowed_fields)),
        ]
        if triage_context is not None:
            if triage_context.brief is not None:
                base_messages.append(context_block("TRIAGE_BRIEF_JSON", triage_context.brief))
            if triage_context.analysis_plan is not None:
                base_messages.append(
                    context_block("TRIAGE_ANALYSIS_PLAN_JSON", triage_context.analysis_plan.model_dump(by_alias=True, exclude_none=True))
                )
            if triage_context.filter_hints:
                base_messages.append(
                    context_block("TRIAGE_FILTER_HINTS_JSON", [h.to_wire() for h in triage_context.filter_hints])
                )

        async def attempt(index: int, hint: Optional[str]) -> AnalysisPlannerOutput:
            messages = list(base_messages)
            if hint:
                messages.append(system_msg(hint))
            try:
                agent_result = await self._call(self._analysis_agent, messages, signal)
            except TurnCancelled:
                raise
            except Exception as e:
                raise AttemptFailed("agent", f"analysis agent failed: {e}")
            _add_usage(result.usage, agent_result.usage if agent_result else None)

            data = parse_json_object(extract_text(agent_result))
            if data is None:
                raise AttemptFailed("builder", "analysis output is not a JSON object", raw=[NOT_JSON_HINT])
            try:
                output = AnalysisPlannerOutput.model_validate(data)
            except ValidationError as e:
                hints = hints_from_validation_error(e)
                raise AttemptFailed("builder", "; ".join(hints), raw=hints)

            problems = preflight_validate_query(output.query, allowed_captions)
            if problems:
                raise AttemptFailed("builder", problems, raw=hints_from_problems(problems.split("; ")))
            return output

        def on_retry(entry: Feedback) -> None:
            self._events.emit("analysis:retry", attempt=entry.attempt + 1, source=entry.source, message=entry.message)

        policy = RetryPolicy(
            max_attempts=self._config.analysis_max_attempts,
            is_retryable=_is_validation_failure,
            build_hint=_retry_hint,
        )
        outcome = await attempt_with_feedback(policy, attempt, on_retry=on_retry)
        result.attempts = outcome.attempts
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        if outcome.value is not None:
            output = outcome.value
            self._events.emit(
                "analysis:done",
                steps=len(output.analysis_plan.steps),
                attempts=outcome.attempts,
                duration_ms=duration_ms,
                usage=result.usage or None,
            )
            return output

        last = outcome.last_failure
        if last is not None and last.source == "agent":
            result.code = ErrorCode.DEPENDENCY_FAILED
            result.error = last.message
        else:
            result.code = ErrorCode.ANALYSIS_PLAN_VALIDATION_FAILED
            result.error = f"{ErrorCode.ANALYSIS_PLAN_VALIDATION_FAILED.value}: {outcome.error}"
        logger.warning(f"Analysis stage failed | code={result.code.value}, attempts={outcome.attempts}")
        self._events.emit("analysis:error", message=result.error, code=result.code.value, duration_ms=duration_ms)
        return None

    async def _compile_stage(
        self,
        message: str,
        datasource_luid: str,
        allowed_fields: Sequence[Dict[str, str]],
        analysis: AnalysisPlannerOutput,
        triage_context: Optional[TriageContext],
        field_aliases: Optional[Dict[str, str]],
        signal: Optional[AbortSignal],
        result: PlanResult,
    ) -> None:
        start_time = time.perf_counter()
        self._events.emit("compile:start", attempt=1)
        messages = build_compiler_messages(
            message, datasource_luid, allowed_fields, analysis.analysis_plan, analysis.query,
            triage_context=triage_context, field_aliases=field_aliases,
        )
        compile_usage: Dict[str, int] = {}

        def fail(code: ErrorCode, text: str) -> None:
            result.code = code
            result.error = text
            duration_ms = int((time.perf_counter() - start_time) * 1000)
            logger.warning(f"Compile stage failed | code={code.value}, error={text[:200]}")
            self._events.emit("compile:error", message=text, code=code.value, duration_ms=duration_ms)

        try:
            agent_result = await self._call(self._compiler_agent, messages, signal)
        except TurnCancelled:
            raise
        except Exception as e:
            fail(ErrorCode.DEPENDENCY_FAILED, f"query compiler failed: {e}")
            return
        _add_usage(compile_usage, agent_result.usage if agent_result else None)
        _add_usage(result.usage, agent_result.usage if agent_result else None)

        payload, error = parse_compiler_output(extract_text(agent_result), datasource_luid)
        if payload is None:
            fail(ErrorCode.BUILDER_VALIDATION, error)
            return

        result.query_payload = payload
        result.query_summary = summarize_query(payload.query)
        self._events.emit(
            "compile:done",
            fields=len(payload.query.fields),
            filters=len(payload.query.filters),
            query_summary=result.query_summary,
            duration_ms=int((time.perf_counter() - start_time) * 1000),
            usage=compile_usage or None,
        )


def build_compiler_messages(
    message: str,
    datasource_luid: str,
    allowed_fields: Sequence[Dict[str, str]],
    analysis_plan: Optional[AnalysisPlan],
    step_query: Optional[QuerySpec],
    feedback: Optional[str] = None,
    attempt: Optional[int] = None,
    triage_context: Optional[TriageContext] = None,
    field_aliases: Optional[Dict[str, str]] = None,
) -> List[Dict[str, str]]:
    """Compiler request shared by the compile stage and fetch retries."""
    messages = [
        user_msg(message),
        system_msg(f"datasourceLuid={datasource_luid}"),
        context_block("ALLOWED_FIELDS_JSON", list(allowed_fields)),
    ]
    if analysis_plan is not None:
        messages.append(context_block("ANALYSIS_PLAN_JSON", analysis_plan.model_dump(by_alias=True, exclude_none=True)))
    if step_query is not None:
        messages.append(context_block("STEP_QUERY_JSON", step_query.to_wire()))
    if triage_context is not None:
        if triage_context.required_fields:
            messages.append(context_block("TRIAGE_REQUIRED_FIELDS_JSON", list(triage_context.required_fields)))
        if triage_context.filter_hints:
            messages.append(
                context_block("TRIAGE_FILTER_HINTS_JSON", [h.to_wire() for h in triage_context.filter_hints])
            )
    if field_aliases:
        messages.append(context_block("FIELD_ALIASES_JSON", dict(field_aliases)))
    if feedback:
        messages.append(system_msg(feedback))
    if attempt is not None:
        messages.append(system_msg(f"ATTEMPT_INDEX={attempt}"))
    return messages


def parse_compiler_output(text: str, datasource_luid: str) -> Tuple[Optional[QueryPayload], str]:
    """
    Parse and validate compiler text into a QueryPayload.

    The datasource is always the caller's; any datasource in the model
    output is ignored. Returns (payload, "") or (None, error message).
    """
    data = parse_json_object(text)
    if data is None:
        return None, "compiler output is not a JSON object"
    query: Any = data.get("query", data if "fields" in data else None)
    if not isinstance(query, dict):
        return None, "compiler output has no query object"
    try:
        payload = QueryPayload(
            datasource=DatasourceRef(datasource_luid=datasource_luid),
            query=QuerySpec.model_validate(query),
            options=data.get("options") or {},
        )
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'query'}: {err.get('msg')}" for err in e.errors()[:5]
        )
        return None, f"compiler output failed validation: {details}"
    return payload, ""
