"""
Session-level data model.

SessionState is owned by the caller across turns. The orchestrator never
mutates the instance it receives; it returns a new frozen snapshot.
"""

from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan


class NormalizedField(BaseModel):
    """A datasource field in the stable catalog shape."""

    model_config = ConfigDict(frozen=True)

    field_caption: str = Field(min_length=1, description="Unique within a datasource")
    data_type: Optional[str] = None
    default_aggregation: Optional[str] = None

    def to_wire(self) -> Dict[str, Optional[str]]:
        out = {"fieldCaption": self.field_caption}
        if self.data_type:
            out["dataType"] = self.data_type
        if self.default_aggregation:
            out["defaultAggregation"] = self.default_aggregation
        return out


class FilterHint(BaseModel):
    """Filter intent extracted by triage, e.g. Region IN [West, East]."""

    model_config = ConfigDict(frozen=True)

    field_caption: str
    operator: Optional[Literal["IN", "EQ", "MATCH", "CONTAINS"]] = None
    values: Optional[List[str]] = None
    note: Optional[str] = None

    def to_wire(self) -> Dict[str, object]:
        out: Dict[str, object] = {"fieldCaption": self.field_caption}
        if self.operator:
            out["operator"] = self.operator
        if self.values:
            out["values"] = list(self.values)
        if self.note:
            out["note"] = self.note
        return out


class TriageContext(BaseModel):
    """What triage learned about the request; consumed by selection and planning."""

    model_config = ConfigDict(frozen=True)

    brief: Optional[object] = None
    brief_natural: Optional[str] = None
    required_fields: Optional[List[str]] = None
    filter_hints: Optional[List[FilterHint]] = None
    analysis_plan: Optional[AnalysisPlan] = None


class Turn(BaseModel):
    """One role-tagged history entry."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class SessionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    datasource_luid: str
    fields: Tuple[NormalizedField, ...] = ()


class SessionState(BaseModel):
    """
    Conversation state threaded across turns.

    `history` is append-only within a turn: the user turn is appended
    before any phase runs and the assistant turn exactly once at the end.
    """

    model_config = ConfigDict(frozen=True)

    history: Tuple[Turn, ...] = ()
    analysis_plan: Optional[AnalysisPlan] = None
    artifacts: Tuple[str, ...] = ()
    metadata: Optional[SessionMetadata] = None
    triage_context: Optional[TriageContext] = None

    def with_turn(self, role: str, content: str) -> "SessionState":
        return self.model_copy(update={"history": self.history + (Turn(role=role, content=content),)})

    def history_messages(self) -> List[Dict[str, str]]:
        return [t.to_message() for t in self.history]


def create_initial_session_state() -> SessionState:
    return SessionState()
