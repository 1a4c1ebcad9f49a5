"""Short human-readable narration for progress events."""

from typing import Callable, Dict, Optional

from vizql_copilot.shared.contracts.events import OrchestratorEvent


_Template = Callable[[object], str]

_EN: Dict[str, _Template] = {
    "triage:start": lambda d: "Understanding your request...",
    "triage:done": lambda d: (
        f"Request understood; required fields: {', '.join(d.required_fields)}"
        if d.required_fields else "Request understood"
    ),
    "triage:error": lambda d: f"Could not analyse the request: {d.message}",
    "clarify:request": lambda d: d.text,
    "metadata:start": lambda d: "Loading datasource fields...",
    "metadata:done": lambda d: f"Loaded {d.count} fields ({d.source})",
    "metadata:error": lambda d: f"Could not load datasource fields: {d.message}",
    "selector:start": lambda d: f"Choosing up to {d.max} of {d.count} fields...",
    "selector:done": lambda d: f"Using fields: {', '.join(d.fields)}",
    "selector:error": lambda d: f"Field selection failed: {d.message}",
    "analysis:start": lambda d: "Planning the analysis...",
    "analysis:retry": lambda d: f"Revising the analysis plan (attempt {d.attempt})",
    "analysis:done": lambda d: f"Analysis plan ready ({d.steps} step{'s' if d.steps != 1 else ''})",
    "analysis:error": lambda d: f"Analysis planning failed: {d.message}",
    "compile:start": lambda d: "Building the query...",
    "compile:done": lambda d: f"Query ready: {d.query_summary}" if d.query_summary else "Query ready",
    "compile:error": lambda d: f"Query building failed: {d.message}",
    "fetch:start": lambda d: "Running the query...",
    "fetch:retry": lambda d: f"Retrying the query (attempt {d.attempt}, {d.source})",
    "fetch:done": lambda d: f"Data received ({d.summary})",
    "fetch:error": lambda d: f"Query failed: {d.message}",
    "summarize:start": lambda d: "Summarizing the results...",
    "summarize:route": lambda d: (
        "Running a deeper analysis on the data" if d.route == "ci" else "Writing a short summary"
    ),
    "ci:start": lambda d: "Analysing the data with code...",
    "ci:success": lambda d: "Code analysis finished",
    "ci:timeout": lambda d: "Code analysis took too long; writing a short summary instead",
    "ci:empty": lambda d: "Code analysis returned nothing; writing a short summary instead",
    "ci:error": lambda d: "Code analysis failed; writing a short summary instead",
    "lightweight:start": lambda d: "Writing a short summary...",
    "lightweight:done": lambda d: "Summary ready",
    "lightweight:fallback": lambda d: "Summary generated from the raw numbers",
    "cancelled": lambda d: "Request cancelled",
    "error": lambda d: f"Error: {d.message}",
}

TEMPLATES: Dict[str, Dict[str, _Template]] = {"en": _EN}


def format_event_message(event: OrchestratorEvent, locale: str = "en") -> Optional[str]:
    """
    Narration for an event, or None when the event has no narration
    (e.g. `final`, whose reply is delivered separately).
    """
    templates = TEMPLATES.get(locale) or _EN
    template = templates.get(event.type)
    if template is None:
        return None
    return template(event.detail)
