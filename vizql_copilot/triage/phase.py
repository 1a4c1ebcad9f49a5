"""
Triage phase.

Asks the triage agent what the request needs: whether data is required at
all, whether the user must clarify first, which fields are indispensable
and which filters were mentioned.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan
from vizql_copilot.shared.errors import AppError, ErrorCode, format_for_user
from vizql_copilot.shared.events import EventBus
from vizql_copilot.shared.llm.client import (
    AgentRunner,
    AgentSpec,
    context_block,
    extract_text,
    parse_json_object,
    user_msg,
)
from vizql_copilot.shared.schemas.session import FilterHint, NormalizedField, TriageContext


logger = logging.getLogger(__name__)

MAX_CATALOG_FIELDS = 120
HINT_OPERATORS = ("IN", "EQ", "MATCH", "CONTAINS")


@dataclass
class TriageOutcome:
    """
    Triage result. When `status` is set the turn ends with `reply`.
    """

    context: TriageContext = field(default_factory=TriageContext)
    needs_data: bool = True
    status: Optional[str] = None
    reply: Optional[str] = None


def parse_filter_hints(raw: Any) -> List[FilterHint]:
    """Keep hints with a caption and a supported operator; de-duplicate values."""
    hints: List[FilterHint] = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        caption = item.get("fieldCaption")
        if not isinstance(caption, str) or not caption.strip():
            continue
        operator = item.get("operator")
        operator = operator.strip().upper() if isinstance(operator, str) else None
        if operator not in HINT_OPERATORS:
            operator = None
        values: List[str] = []
        for v in item.get("values") or []:
            text = str(v).strip() if v is not None else ""
            if text and text not in values:
                values.append(text)
        note = item.get("note") if isinstance(item.get("note"), str) else None
        hints.append(FilterHint(field_caption=caption.strip(), operator=operator, values=values or None, note=note))
    return hints


def _required_fields(raw: Any) -> List[str]:
    out: List[str] = []
    for item in raw if isinstance(raw, list) else []:
        if isinstance(item, str) and item.strip() and item.strip() not in out:
            out.append(item.strip())
    return out


def _analysis_plan(raw: Any) -> Optional[AnalysisPlan]:
    if not isinstance(raw, dict):
        return None
    try:
        return AnalysisPlan.model_validate(raw)
    except ValidationError:
        return None


def build_triage_context(data: Dict[str, Any]) -> TriageContext:
    brief_natural = data.get("briefNatural")
    return TriageContext(
        brief=data.get("brief"),
        brief_natural=brief_natural if isinstance(brief_natural, str) and brief_natural.strip() else None,
        required_fields=_required_fields(data.get("requiredFields")) or None,
        filter_hints=parse_filter_hints(data.get("filterHints")) or None,
        analysis_plan=_analysis_plan(data.get("analysis_plan")),
    )


async def run_triage(
    runner: AgentRunner,
    agent: AgentSpec,
    message: str,
    events: EventBus,
    history: Sequence[Dict[str, str]] = (),
    catalog: Optional[Sequence[NormalizedField]] = None,
    signal: Optional[AbortSignal] = None,
) -> TriageOutcome:
    """
    Run triage for a message.

    Args:
        history: Prior turns as role-tagged messages (excluding this message)
        catalog: Field catalog already known for the datasource, if any

    Raises:
        TurnCancelled: If the signal fires during the agent call
    """
    start_time = time.perf_counter()
    events.emit("triage:start", message=message)

    messages = [*history, user_msg(message)]
    if catalog:
        messages.append(context_block("AVAILABLE_FIELDS_JSON", [f.to_wire() for f in catalog[:MAX_CATALOG_FIELDS]]))

    try:
        result = await run_cancelable(signal, lambda: runner.run(agent, messages))
    except TurnCancelled:
        raise
    except Exception as e:
        duration_ms = int((time.perf_counter() - start_time) * 1000)
        logger.warning(f"Triage agent failed: {e}")
        events.emit("triage:error", message=str(e), code=ErrorCode.DEPENDENCY_FAILED.value, duration_ms=duration_ms)
        err = AppError(ErrorCode.DEPENDENCY_FAILED, f"triage failed: {e}", next_action="Retry the request.")
        return TriageOutcome(status="error", reply=format_for_user(err))

    data = parse_json_object(extract_text(result))
    if data is None:
        logger.info("Triage output was not JSON; continuing without triage context")
        data = {}

    context = build_triage_context(data)
    needs_data = data.get("needsData") is not False
    text = data.get("message") if isinstance(data.get("message"), str) else ""
    duration_ms = int((time.perf_counter() - start_time) * 1000)

    events.emit(
        "triage:done",
        needs_data=needs_data,
        required_fields=context.required_fields or [],
        filter_hints_count=len(context.filter_hints or []),
        duration_ms=duration_ms,
    )

    if data.get("needsClarification") is True and text.strip():
        events.emit("clarify:request", text=text.strip())
        return TriageOutcome(context=context, needs_data=needs_data, status="clarify", reply=text.strip())

    if not needs_data and text.strip():
        return TriageOutcome(context=context, needs_data=False, status="ok", reply=text.strip())

    return TriageOutcome(context=context, needs_data=True)
