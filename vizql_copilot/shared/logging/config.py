"""
Structured logging for the copilot.

Module loggers write messages prefixed with `[session=..] [graph=..]
[node=..]`. StructuredFormatter lifts those tags into JSON fields so the
JSON stream can be filtered per session and per phase.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional


PACKAGE_LOGGER = "vizql_copilot"

_TAG_RE = re.compile(r"\[(session|graph|node|router|api|events|llm)(?:=([^\]]*))?\]\s*")


def split_tags(message: str):
    """
    Strip leading `[key=value]` tags from a log message.

    Returns:
        (tags dict, remaining message). Bare tags such as `[llm]` map to True.
    """
    tags: Dict[str, Any] = {}
    pos = 0
    while True:
        match = _TAG_RE.match(message, pos)
        if not match:
            break
        key, value = match.group(1), match.group(2)
        tags[key] = value if value is not None else True
        pos = match.end()
    return tags, message[pos:]


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record: timestamp, level, logger, message, the
    prefix tags, `extra` (when attached by log_phase_transition) and the
    formatted exception.
    """

    def format(self, record: logging.LogRecord) -> str:
        tags, message = split_tags(record.getMessage())
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        entry.update(tags)

        extra = getattr(record, "extra", None)
        if extra is not None:
            entry["extra"] = extra
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    logger_name: str = PACKAGE_LOGGER,
) -> logging.Logger:
    """
    Route a logger (the package logger by default) through StructuredFormatter.

    Existing handlers on that logger are replaced and propagation to the
    root logger is turned off so records are not printed twice.

    Args:
        level: Minimum level for the logger
        log_file: Also append JSON lines to this file
        logger_name: Logger to configure

    Returns:
        The configured logger
    """
    target = logging.getLogger(logger_name)
    target.setLevel(level)
    target.propagate = False
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.close()

    formatter = StructuredFormatter()
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        target.addHandler(handler)
    return target


def log_phase_transition(
    phase: str,
    state: Dict[str, Any],
    extra: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """
    Log entry into an orchestrator phase with a compact view of the turn state.

    Args:
        phase: Phase being entered (e.g. "metadata", "fetch")
        state: Current OrchestratorState
        extra: Additional fields for the record
        logger: Logger to use (defaults to the graph logger)
    """
    logger = logger or logging.getLogger(f"{PACKAGE_LOGGER}.graph")

    snapshot = {
        "phase": phase,
        "status": state.get("status"),
        "fields": len(state.get("normalized_fields") or []),
        "allowed_fields": len(state.get("allowed_fields") or []),
        "has_plan": state.get("analysis_plan") is not None,
        "has_query": state.get("query_payload") is not None,
        "artifact": state.get("artifact_path"),
    }
    if extra:
        snapshot.update(extra)

    logger.info(
        f"[session={state.get('session_id', 'unknown')}] [graph=orchestrator] [node={phase}] Entering phase",
        extra={"extra": snapshot},
    )
