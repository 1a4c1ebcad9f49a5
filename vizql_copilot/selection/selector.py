"""
Field selection.

Maps a free-text request plus triage requirements onto an allow-list of
catalog fields. The model proposes; this module enforces: unknown fields
are dropped, required fields are guaranteed and the list is bounded.
"""

import difflib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from vizql_copilot.shared.cancellation import AbortSignal, TurnCancelled, run_cancelable
from vizql_copilot.shared.contracts.query_spec import normalize_aggregation
from vizql_copilot.shared.errors import ErrorCode
from vizql_copilot.shared.events import EventBus
from vizql_copilot.shared.llm.client import (
    AgentRunner,
    AgentSpec,
    context_block,
    extract_text,
    parse_json_object,
    user_msg,
)
from vizql_copilot.shared.schemas.session import FilterHint, NormalizedField


logger = logging.getLogger(__name__)

DEFAULT_CLARIFY = (
    "I couldn't match your request to fields in this datasource. "
    "Which measures and dimensions should I use?"
)

NO_VALID_SELECTION = "no_valid_selection"


@dataclass
class SelectionResult:
    """Allow-list for the compiler, or a clarification for the user."""

    allowed_fields: List[Dict[str, str]] = field(default_factory=list)
    suggested_aliases: Dict[str, str] = field(default_factory=dict)
    clarify: Optional[str] = None
    missing_required: List[str] = field(default_factory=list)
    candidates: List[str] = field(default_factory=list)
    forced: List[str] = field(default_factory=list)

    @property
    def needs_clarification(self) -> bool:
        return self.clarify is not None

    @property
    def captions(self) -> List[str]:
        return [f["fieldCaption"] for f in self.allowed_fields]


def candidate_names(name: str, captions: Sequence[str], limit: int = 5) -> List[str]:
    """Catalog captions that look like `name` (substring matches first, then fuzzy)."""
    lowered = name.lower()
    picks = [c for c in captions if lowered in c.lower() or c.lower() in lowered]
    for c in difflib.get_close_matches(name, list(captions), n=limit, cutoff=0.5):
        if c not in picks:
            picks.append(c)
    return picks[:limit]


def _proposed_entries(raw: Any) -> List[Dict[str, Optional[str]]]:
    entries = []
    for item in raw if isinstance(raw, list) else []:
        if isinstance(item, str) and item.strip():
            entries.append({"fieldCaption": item.strip(), "function": None})
        elif isinstance(item, dict):
            caption = item.get("fieldCaption") or item.get("name")
            if isinstance(caption, str) and caption.strip():
                entries.append({"fieldCaption": caption.strip(), "function": item.get("function")})
    return entries


def _field_entry(catalog_field: NormalizedField, function: Any = None) -> Dict[str, str]:
    try:
        agg = normalize_aggregation(function)
    except ValueError:
        agg = None
    agg = agg or catalog_field.default_aggregation
    entry = {"fieldCaption": catalog_field.field_caption}
    if agg:
        entry["function"] = agg
    return entry


class FieldSelector:
    """
    Builds the allow-list handed to planning and compilation.

    Args:
        runner: Agent capability
        agent: The field-selector AgentSpec
        events: Optional event bus for selector:* events
    """

    def __init__(self, runner: AgentRunner, agent: AgentSpec, events: Optional[EventBus] = None):
        self._runner = runner
        self._agent = agent
        self._events = events

    def _emit(self, event_type: str, **detail) -> None:
        if self._events is not None:
            self._events.emit(event_type, **detail)

    async def _propose(
        self,
        message: str,
        catalog: Sequence[NormalizedField],
        required_fields: Sequence[str],
        filter_hints: Sequence[FilterHint],
        max_list: int,
        signal: Optional[AbortSignal],
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """Returns (proposal, agent error). A failed agent call yields an empty proposal."""
        messages = [
            user_msg(message),
            context_block("MAX_N", max_list),
            context_block("AVAILABLE_FIELDS_JSON", [f.to_wire() for f in catalog]),
        ]
        if required_fields:
            messages.append(context_block("TRIAGE_REQUIRED_FIELDS_JSON", list(required_fields)))
        if filter_hints:
            messages.append(context_block("TRIAGE_FILTER_HINTS_JSON", [h.to_wire() for h in filter_hints]))
        try:
            result = await run_cancelable(signal, lambda: self._runner.run(self._agent, messages))
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning(f"Field selector agent failed, continuing with no proposal: {e}")
            return {}, f"field selector failed: {e}"
        return parse_json_object(extract_text(result)) or {}, None

    async def select(
        self,
        message: str,
        normalized_fields: Sequence[NormalizedField],
        required_fields: Optional[Sequence[str]] = None,
        filter_hints: Optional[Sequence[FilterHint]] = None,
        max_list: int = 8,
        signal: Optional[AbortSignal] = None,
    ) -> SelectionResult:
        """
        Select the allow-list for a request.

        Returns:
            SelectionResult with allowed_fields, or with clarify set when a
            required field is absent from the catalog or nothing usable was
            selected.

        Raises:
            TurnCancelled: If the signal fires during the agent call
        """
        start_time = time.perf_counter()
        required_fields = [r for r in (required_fields or []) if isinstance(r, str) and r.strip()]
        filter_hints = list(filter_hints or [])
        max_list = max(1, max_list)

        by_caption = {f.field_caption: f for f in normalized_fields}
        by_lower = {c.lower(): c for c in by_caption}
        captions = list(by_caption)
        self._emit("selector:start", max=max_list, count=len(captions))

        # Required fields must exist in the catalog before anything else happens
        resolved_required: List[str] = []
        missing: List[str] = []
        for name in (r.strip() for r in required_fields):
            caption = name if name in by_caption else by_lower.get(name.lower())
            if caption is None:
                missing.append(name)
            elif caption not in resolved_required:
                resolved_required.append(caption)
        if missing:
            candidates: List[str] = []
            for name in missing:
                for c in candidate_names(name, captions):
                    if c not in candidates:
                        candidates.append(c)
            text = (
                f"These fields are not in the datasource: {', '.join(missing)}. "
                + (f"Did you mean: {', '.join(candidates)}?" if candidates else "Which fields should I use instead?")
            )
            logger.info(f"Required fields missing from catalog | missing={missing}")
            self._emit(
                "selector:error",
                message=text,
                code=ErrorCode.MISSING_REQUIRED_FIELD.value,
                duration_ms=int((time.perf_counter() - start_time) * 1000),
            )
            return SelectionResult(clarify=text, missing_required=missing, candidates=candidates)

        proposal, agent_error = await self._propose(
            message, normalized_fields, resolved_required, filter_hints, max_list, signal
        )

        proposed: List[Dict[str, str]] = []
        dropped: List[str] = []
        for entry in _proposed_entries(proposal.get("allowedFields")):
            caption = entry["fieldCaption"]
            if caption not in by_caption:
                caption = by_lower.get(caption.lower())
            if caption is None:
                dropped.append(entry["fieldCaption"])
                continue
            if any(p["fieldCaption"] == caption for p in proposed):
                continue
            proposed.append(_field_entry(by_caption[caption], entry.get("function")))
        if dropped:
            logger.info(f"Dropped fields not in catalog | fields={dropped}")

        proposed_by_caption = {p["fieldCaption"]: p for p in proposed}
        forced = [c for c in resolved_required if c not in proposed_by_caption]

        # Required first (never dropped), then hinted filter fields, then the rest
        ordered: List[Dict[str, str]] = [
            proposed_by_caption.get(c) or _field_entry(by_caption[c]) for c in resolved_required
        ]
        used = set(resolved_required)
        for hint in filter_hints:
            caption = hint.field_caption if hint.field_caption in by_caption else by_lower.get(hint.field_caption.lower())
            if caption and caption not in used:
                ordered.append(proposed_by_caption.get(caption) or _field_entry(by_caption[caption]))
                used.add(caption)
        for p in proposed:
            if p["fieldCaption"] not in used:
                ordered.append(p)
                used.add(p["fieldCaption"])

        allowed = ordered[: max(max_list, len(resolved_required))]

        aliases = proposal.get("suggestedAliases")
        aliases = {
            str(k): v for k, v in (aliases.items() if isinstance(aliases, dict) else [])
            if isinstance(v, str) and v in by_caption
        }

        if not allowed:
            clarify = proposal.get("clarify")
            text = clarify.strip() if isinstance(clarify, str) and clarify.strip() else DEFAULT_CLARIFY
            self._emit(
                "selector:error",
                message=agent_error or text,
                code=ErrorCode.DEPENDENCY_FAILED.value if agent_error else NO_VALID_SELECTION,
                duration_ms=int((time.perf_counter() - start_time) * 1000),
            )
            return SelectionResult(clarify=text, candidates=captions[:10], suggested_aliases=aliases)

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(f"Fields selected | count={len(allowed)}, forced={forced}, duration={duration_ms}ms")
        self._emit("selector:done", selected=len(allowed), fields=[a["fieldCaption"] for a in allowed], forced=forced)
        return SelectionResult(allowed_fields=allowed, suggested_aliases=aliases, forced=forced)
