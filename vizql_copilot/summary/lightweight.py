"""
Lightweight summarization.

Sends a character-bounded slice of the primary artifact to the narrator
agent. When the agent fails or returns nothing, a deterministic summary is
built from the artifacts instead, so this path always produces a reply.
"""

import logging
import math
import time
from typing import Any, List, Optional, Sequence

from vizql_copilot.shared.artifacts import ArtifactStore, count_rows
from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan
from vizql_copilot.shared.events import EventBus
from vizql_copilot.shared.llm.client import AgentRunner, AgentSpec, context_block, extract_text, system_msg


logger = logging.getLogger(__name__)


def _records(data: Any) -> Optional[list]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("rows", "data", "results"):
            if isinstance(data.get(key), list):
                return data[key]
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def extract_single_number(data: Any) -> Optional[float]:
    """The first numeric cell of a one-row result (or a bare number)."""
    direct = _as_number(data) if isinstance(data, (int, float)) else None
    if direct is not None:
        return direct
    records = _records(data)
    if not records or len(records) != 1:
        return None
    row = records[0]
    cells = row.values() if isinstance(row, dict) else row if isinstance(row, list) else []
    for cell in cells:
        number = _as_number(cell)
        if number is not None:
            return number
    return None


def _fmt(value: float) -> str:
    return f"{value:,.2f}".rstrip("0").rstrip(".")


def fallback_summary(datasets: Sequence[Any]) -> str:
    """
    Deterministic markdown summary.

    One single-number result gives that number; two give "b vs a" with
    the delta and percentage change; otherwise rows and columns are listed.
    """
    numbers: List[float] = []
    for data in list(datasets)[:2]:
        number = extract_single_number(data)
        if number is not None:
            numbers.append(number)

    if len(numbers) == 1:
        headline = _fmt(numbers[0])
    elif len(numbers) >= 2:
        a, b = numbers[0], numbers[1]
        delta = b - a
        pct = (delta / a) * 100 if a != 0 else 0.0
        headline = f"{_fmt(b)} vs {_fmt(a)} (delta {_fmt(delta)}; {pct:.2f}%)"
    else:
        primary = datasets[0] if datasets else None
        records = _records(primary) or []
        if not records:
            return "## Summary\nThe query returned no rows."
        columns = list(records[0]) if isinstance(records[0], dict) else []
        headline = f"The query returned {count_rows(primary)} rows"
        if columns:
            headline += f" with columns {', '.join(str(c) for c in columns)}"
        headline += "."
    return f"## Summary\n{headline}"


class LightweightSummarizer:
    """
    Narrates the primary artifact with the lightweight-summarizer agent.

    Args:
        runner: Agent capability
        agent: The lightweight-summarizer AgentSpec
        artifact_store: Resolves artifact paths
        events: Event bus for lightweight:* events
        char_budget: Characters of artifact JSON sent to the agent
    """

    def __init__(
        self,
        runner: AgentRunner,
        agent: AgentSpec,
        artifact_store: ArtifactStore,
        events: EventBus,
        char_budget: int = 12000,
    ):
        self._runner = runner
        self._agent = agent
        self._store = artifact_store
        self._events = events
        self._char_budget = char_budget

    async def summarize(
        self,
        message: str,
        artifact_paths: Sequence[str],
        analysis_plan: Optional[AnalysisPlan] = None,
        signal: Optional[AbortSignal] = None,
    ) -> str:
        """
        Markdown reply for the artifacts; never raises except TurnCancelled.
        """
        start_time = time.perf_counter()
        primary = artifact_paths[0] if artifact_paths else ""
        text = self._store.load_text(primary) if primary else ""
        truncated = len(text) > self._char_budget
        snippet = text[: self._char_budget]
        self._events.emit("lightweight:start", artifact=primary, chars=len(snippet))

        if snippet:
            messages = [
                system_msg(f"QUESTION={message}"),
                system_msg(f"RESULT_JSON={snippet}"),
                system_msg(f"RESULT_TRUNCATED={'true' if truncated else 'false'}"),
            ]
            if analysis_plan is not None:
                messages.append(context_block("ANALYSIS_PLAN_JSON", analysis_plan.model_dump(by_alias=True, exclude_none=True)))
            try:
                result = await run_cancelable(signal, lambda: self._runner.run(self._agent, messages))
                reply = extract_text(result).strip()
            except TurnCancelled:
                raise
            except Exception as e:
                logger.warning(f"Lightweight summarizer failed, using fallback: {e}")
                reply = ""
            if reply:
                self._events.emit(
                    "lightweight:done",
                    chars=len(reply),
                    duration_ms=int((time.perf_counter() - start_time) * 1000),
                )
                return reply

        datasets = [self._store.load(p) for p in artifact_paths]
        reply = fallback_summary(datasets)
        self._events.emit("lightweight:fallback", message="narration unavailable; deterministic summary used")
        return reply
