"""
Retry hints for the analysis stage.

Turns schema violations into short, targeted instructions the planner can
act on ("filterType 'TOPN' is not supported; use one of ...") instead of
echoing raw validation output.
"""

from typing import Any, Iterable, List

from pydantic import ValidationError

from vizql_copilot.shared.contracts.query_spec import AGGREGATION_FUNCTIONS, FILTER_TYPES


TOP_REQUIREMENTS = (
    "TOP filters need field {fieldCaption}, howMany as a positive integer "
    "and fieldToMeasure {fieldCaption, function}"
)


def _loc(error: dict) -> List[str]:
    return [str(p) for p in error.get("loc", ())]


def _hint_for_error(error: dict) -> str:
    loc = _loc(error)
    kind = error.get("type", "")
    ctx = error.get("ctx") or {}
    path = ".".join(loc) or "output"

    if kind == "union_tag_invalid":
        return f"filterType {ctx.get('tag')!r} is not supported; use one of {', '.join(FILTER_TYPES)}"
    if kind == "union_tag_not_found":
        return f"every filter needs filterType, one of {', '.join(FILTER_TYPES)}"
    if "howMany" in loc or "fieldToMeasure" in loc:
        return TOP_REQUIREMENTS
    if kind == "too_short" and "steps" in loc:
        return "analysis_plan.steps must include at least one step, each with id and goal"
    if kind == "too_short" and loc[-1:] == ["fields"]:
        return "query.fields must include at least one field from ALLOWED_FIELDS_JSON"
    if "function" in loc:
        return f"function must be one of {', '.join(AGGREGATION_FUNCTIONS)} (omit it for dimensions)"
    if kind == "missing" and len(loc) == 1:
        return f"return both analysis_plan and query; {loc[0]} is missing"
    if kind == "missing" and loc[-1:] in (["id"], ["goal"]):
        return "each analysis_plan step needs a non-empty id and goal"
    return f"{path}: {error.get('msg', 'invalid value')}"


def hints_from_validation_error(err: ValidationError, limit: int = 5) -> List[str]:
    """Distinct hints for a ValidationError, most specific first, at most `limit`."""
    hints: List[str] = []
    for error in err.errors():
        hint = _hint_for_error(error)
        if hint not in hints:
            hints.append(hint)
    return hints[:limit]


def hints_from_problems(problems: Iterable[Any]) -> List[str]:
    """Hints for preflight-style problem strings."""
    hints: List[str] = []
    for problem in problems:
        text = str(problem).strip()
        if not text:
            continue
        hint = TOP_REQUIREMENTS if ("howMany" in text or "fieldToMeasure" in text) else text
        if hint not in hints:
            hints.append(hint)
    return hints


NOT_JSON_HINT = "return exactly one JSON object with analysis_plan and query, no prose or code fences"


def format_retry_hint(hints: List[str]) -> str:
    """Render hints as the RETRY_HINT context block."""
    body = "; ".join(hints) if hints else "fix the previous output so it matches the schema"
    return f"RETRY_HINT=Your previous answer was rejected. Fix: {body}"
