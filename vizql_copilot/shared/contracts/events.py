"""
Progress event contract.

Every event type maps to exactly one payload model. An OrchestratorEvent
validates its payload against that model at construction, so consumers
can switch on `type` and rely on the payload's attributes.
"""

from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, model_validator


class EventPayload(BaseModel):
    """Base for all event payloads."""

    model_config = ConfigDict(extra="forbid", frozen=True)


# -----------------------------------------------------------------------------
# Payload variants
# -----------------------------------------------------------------------------


class TriageStart(EventPayload):
    message: str


class TriageDone(EventPayload):
    needs_data: bool = True
    required_fields: List[str] = []
    filter_hints_count: int = 0
    duration_ms: int = 0


class ClarifyRequest(EventPayload):
    text: str
    missing_fields: List[str] = []
    candidates: List[str] = []


class PhaseError(EventPayload):
    message: str
    code: Optional[str] = None
    duration_ms: Optional[int] = None


class MetadataStart(EventPayload):
    datasource_luid: str


class MetadataDone(EventPayload):
    count: int
    source: Literal["session", "memory", "disk", "fetch"]
    duration_ms: int = 0


class SelectorStart(EventPayload):
    max: int
    count: int


class SelectorDone(EventPayload):
    selected: int
    fields: List[str]
    forced: List[str] = []


class StageStart(EventPayload):
    attempt: int = 1


class StageRetry(EventPayload):
    attempt: int
    source: str
    message: str


class AnalysisDone(EventPayload):
    steps: int
    attempts: int = 1
    duration_ms: int = 0
    usage: Optional[Dict[str, int]] = None


class CompileDone(EventPayload):
    fields: int
    filters: int
    query_summary: str = ""
    duration_ms: int = 0
    usage: Optional[Dict[str, int]] = None


class FetchStart(EventPayload):
    max_attempts: int


class FetchDone(EventPayload):
    summary: str
    artifact: Optional[str] = None
    attempts: int = 1
    duration_ms: int = 0


class SummarizeStart(EventPayload):
    artifacts: List[str]


class SummarizeRoute(EventPayload):
    route: Literal["ci", "lightweight"]
    reason: str


class CiStart(EventPayload):
    artifacts: List[str]
    timeout_s: float


class CiOutcome(EventPayload):
    outcome: Literal["success", "timeout", "empty", "error"]
    duration_ms: int = 0
    message: Optional[str] = None


class LightweightStart(EventPayload):
    artifact: str
    chars: int


class LightweightDone(EventPayload):
    chars: int
    duration_ms: int = 0


class LightweightFallback(EventPayload):
    message: str


class FinalReply(EventPayload):
    reply: str
    status: Literal["ok", "clarify", "error"] = "ok"
    duration_ms: Optional[int] = None


class TurnCancelledPayload(EventPayload):
    phase: Optional[str] = None
    reason: Optional[str] = None


EVENT_PAYLOADS: Dict[str, Type[EventPayload]] = {
    "triage:start": TriageStart,
    "triage:done": TriageDone,
    "triage:error": PhaseError,
    "clarify:request": ClarifyRequest,
    "metadata:start": MetadataStart,
    "metadata:done": MetadataDone,
    "metadata:error": PhaseError,
    "selector:start": SelectorStart,
    "selector:done": SelectorDone,
    "selector:error": PhaseError,
    "analysis:start": StageStart,
    "analysis:retry": StageRetry,
    "analysis:done": AnalysisDone,
    "analysis:error": PhaseError,
    "compile:start": StageStart,
    "compile:done": CompileDone,
    "compile:error": PhaseError,
    "fetch:start": FetchStart,
    "fetch:retry": StageRetry,
    "fetch:done": FetchDone,
    "fetch:error": PhaseError,
    "summarize:start": SummarizeStart,
    "summarize:route": SummarizeRoute,
    "ci:start": CiStart,
    "ci:success": CiOutcome,
    "ci:timeout": CiOutcome,
    "ci:empty": CiOutcome,
    "ci:error": CiOutcome,
    "lightweight:start": LightweightStart,
    "lightweight:done": LightweightDone,
    "lightweight:fallback": LightweightFallback,
    "final": FinalReply,
    "cancelled": TurnCancelledPayload,
    "error": PhaseError,
}


class OrchestratorEvent(BaseModel):
    """A typed progress event: `type` is namespaced as `phase:lifecycle`."""

    model_config = ConfigDict(frozen=True)

    type: str
    detail: Optional[Any] = None

    @model_validator(mode="before")
    @classmethod
    def _check_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        event_type = data.get("type")
        payload_cls = EVENT_PAYLOADS.get(event_type) if isinstance(event_type, str) else None
        if payload_cls is None:
            raise ValueError(f"Unknown event type '{event_type}'")
        detail = data.get("detail")
        if detail is None:
            detail = payload_cls()
        elif isinstance(detail, dict):
            detail = payload_cls.model_validate(detail)
        elif not isinstance(detail, payload_cls):
            raise ValueError(
                f"Event '{event_type}' expects {payload_cls.__name__}, got {type(detail).__name__}"
            )
        return {"type": event_type, "detail": detail}

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "detail": self.detail.model_dump(exclude_none=True)}
