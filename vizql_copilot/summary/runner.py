"""
Summarize phase: route between the code-interpreter and lightweight paths.

The code-interpreter path runs when a plan step asks for code execution
or an artifact is larger than the row threshold. It is raced against a
fixed timeout; any outcome other than success falls through to the
lightweight path, which always yields a reply.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from vizql_copilot.shared.artifacts import ArtifactStore
from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.config import AppConfig, DEFAULT_CONFIG
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan
from vizql_copilot.shared.events import EventBus
from vizql_copilot.summary.code_interpreter import CodeExecutionSummarizer
from vizql_copilot.summary.lightweight import LightweightSummarizer


logger = logging.getLogger(__name__)


@dataclass
class SummaryResult:
    reply: Optional[str] = None
    route: Optional[str] = None
    ci_outcome: Optional[str] = None
    cancelled: bool = False


class SummarizeRunner:
    """
    Args:
        lightweight: Lightweight summarizer
        code_interpreter: Heavyweight summarizer (None disables the CI path)
        artifact_store: Used for row counts
        events: Event bus for summarize:*, ci:* events
        config: Supplies ci_rows_threshold and ci_timeout_s
    """

    def __init__(
        self,
        lightweight: LightweightSummarizer,
        code_interpreter: Optional[CodeExecutionSummarizer],
        artifact_store: ArtifactStore,
        events: EventBus,
        config: AppConfig = DEFAULT_CONFIG,
    ):
        self._lightweight = lightweight
        self._ci = code_interpreter
        self._store = artifact_store
        self._events = events
        self._config = config

    def choose_route(self, artifact_paths: Sequence[str], analysis_plan: Optional[AnalysisPlan]) -> Tuple[str, str]:
        """Returns (route, reason) where route is "ci" or "lightweight"."""
        if analysis_plan is not None and analysis_plan.requests_code_execution():
            return "ci", "analysis plan step requests code execution"
        threshold = self._config.ci_rows_threshold
        for path in artifact_paths:
            rows = self._store.count_rows(path)
            if rows > threshold:
                return "ci", f"rows={rows} exceeds threshold {threshold}"
        return "lightweight", f"rows within threshold {threshold}"

    async def _run_ci(
        self,
        message: str,
        artifact_paths: Sequence[str],
        analysis_plan: Optional[AnalysisPlan],
        signal: Optional[AbortSignal],
    ) -> Tuple[str, Optional[str]]:
        """Returns (outcome, text). TurnCancelled propagates."""
        timeout_s = self._config.ci_timeout_s
        self._events.emit("ci:start", artifacts=list(artifact_paths), timeout_s=timeout_s)
        start_time = time.perf_counter()

        def elapsed() -> int:
            return int((time.perf_counter() - start_time) * 1000)

        try:
            text = await run_cancelable(
                signal,
                lambda: asyncio.wait_for(self._ci.run(message, artifact_paths, analysis_plan), timeout=timeout_s),
            )
        except TurnCancelled:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"Code interpreter timed out after {timeout_s}s")
            self._events.emit("ci:timeout", outcome="timeout", duration_ms=elapsed())
            return "timeout", None
        except Exception as e:
            logger.warning(f"Code interpreter failed: {e}")
            self._events.emit("ci:error", outcome="error", duration_ms=elapsed(), message=str(e))
            return "error", None

        if not isinstance(text, str) or not text.strip():
            self._events.emit("ci:empty", outcome="empty", duration_ms=elapsed())
            return "empty", None
        self._events.emit("ci:success", outcome="success", duration_ms=elapsed())
        return "success", text.strip()

    async def summarize(
        self,
        message: str,
        artifact_paths: Sequence[str],
        analysis_plan: Optional[AnalysisPlan] = None,
        signal: Optional[AbortSignal] = None,
    ) -> SummaryResult:
        """
        Produce the turn reply from the artifacts.

        Returns:
            SummaryResult with reply, or cancelled=True without running the
            alternate path.
        """
        try:
            if signal is not None:
                signal.raise_if_aborted()
            self._events.emit("summarize:start", artifacts=list(artifact_paths))
            route, reason = self.choose_route(artifact_paths, analysis_plan)
            if route == "ci" and self._ci is None:
                route, reason = "lightweight", "code interpreter unavailable"
            self._events.emit("summarize:route", route=route, reason=reason)
            logger.info(f"Summarize route | route={route}, reason={reason}")

            ci_outcome = None
            if route == "ci":
                ci_outcome, text = await self._run_ci(message, artifact_paths, analysis_plan, signal)
                if text:
                    return SummaryResult(reply=text, route="ci", ci_outcome=ci_outcome)
                if signal is not None:
                    signal.raise_if_aborted()

            reply = await self._lightweight.summarize(message, artifact_paths, analysis_plan, signal)
            return SummaryResult(reply=reply, route="lightweight", ci_outcome=ci_outcome)
        except TurnCancelled:
            logger.info("Summarize cancelled")
            return SummaryResult(cancelled=True)
