"""
Per-session analysis log.

One JSON Lines file per session at <logs_dir>/<session_id>/analysis.jsonl
holding every progress event, every agent call (timing, tokens, cost) and
one summary line per turn. Writing never raises into the caller.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


# USD per 1M tokens
MODEL_COSTS = {
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4.1-nano": {"input": 0.10, "output": 0.40},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-5-mini": {"input": 0.25, "output": 2.00},
}

# One log per session id, shared by the orchestrator and the API layer
_log_registry: Dict[str, "AnalysisLog"] = {}


def get_or_create_analysis_log(session_id: str, logs_dir: str = "logs") -> "AnalysisLog":
    if session_id not in _log_registry:
        _log_registry[session_id] = AnalysisLog(session_id, logs_dir)
    return _log_registry[session_id]


def remove_analysis_log(session_id: str) -> None:
    _log_registry.pop(session_id, None)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost of a call; models without a price entry cost 0."""
    prices = MODEL_COSTS.get(model)
    if prices is None:
        return 0.0
    return (input_tokens * prices["input"] + output_tokens * prices["output"]) / 1_000_000


@dataclass
class UsageTotals:
    events: int = 0
    llm_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    llm_ms: float = 0.0

    def add_call(self, input_tokens: int, output_tokens: int, cost: float, duration_ms: float) -> None:
        self.llm_calls += 1
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost_usd += cost
        self.llm_ms += duration_ms

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_tokens"] = self.input_tokens + self.output_tokens
        data["cost_usd"] = round(self.cost_usd, 6)
        data["llm_ms"] = round(self.llm_ms, 2)
        return data


class AnalysisLog:
    """
    Appends JSON lines for one session.

    Usage is counted per turn (reset by log_turn_summary) and for the
    whole session.
    """

    def __init__(self, session_id: str, logs_dir: str = "logs"):
        self.session_id = session_id
        self.log_file = Path(logs_dir) / session_id / "analysis.jsonl"
        self.turn = UsageTotals()
        self.session = UsageTotals()
        self.turns_logged = 0

    def _write(self, kind: str, **fields: Any) -> None:
        entry = {
            "type": kind,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            **fields,
        }
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logger.warning(f"[session={self.session_id}] analysis log write failed: {e}")

    def log_event(self, event_type: str, detail: Optional[Dict[str, Any]] = None) -> None:
        """Record a progress event; streaming `:delta` events are skipped."""
        if event_type.endswith(":delta"):
            return
        self.turn.events += 1
        self.session.events += 1
        if detail:
            self._write("event", event=event_type, detail=detail)
        else:
            self._write("event", event=event_type)

    def log_llm_call(
        self,
        agent: str,
        model: str,
        duration_ms: float,
        input_tokens: int,
        output_tokens: int,
        response: Optional[str] = None,
    ) -> None:
        """
        Record one agent call.

        Args:
            agent: Agent name (e.g. "query-compiler")
            model: Model the agent ran on
            duration_ms: Wall time of the call
            input_tokens: Prompt tokens
            output_tokens: Completion tokens
            response: Model text, truncated to 4000 characters
        """
        cost = calculate_cost(model, input_tokens, output_tokens)
        self.turn.add_call(input_tokens, output_tokens, cost, duration_ms)
        self.session.add_call(input_tokens, output_tokens, cost, duration_ms)

        fields: Dict[str, Any] = {
            "agent": agent,
            "model": model,
            "duration_ms": round(duration_ms, 2),
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_usd": round(cost, 6),
        }
        if response is not None:
            fields["response"] = response[:4000]
        self._write("llm_call", **fields)

    def log_turn_summary(self, status: str, duration_ms: float) -> Dict[str, Any]:
        """Write the summary for the turn that just ended and start counting a new one."""
        self.turns_logged += 1
        summary = {
            "turn": self.turns_logged,
            "status": status,
            "duration_ms": round(duration_ms, 2),
            "turn_usage": self.turn.to_dict(),
            "session_usage": self.session.to_dict(),
        }
        self._write("turn_summary", **summary)
        self.turn = UsageTotals()
        return summary

    def read_entries(self) -> List[Dict[str, Any]]:
        """All entries written so far (empty when nothing was written)."""
        if not self.log_file.exists():
            return []
        with open(self.log_file, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
