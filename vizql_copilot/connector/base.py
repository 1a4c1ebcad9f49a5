"""Datasource connector interface consumed by the pipeline."""

import json
from typing import Any, Dict, Optional, Protocol


class ConnectorTimeout(Exception):
    """Raised when a connector call exceeds its time budget."""


class DatasourceConnector(Protocol):
    async def query_datasource(
        self,
        datasource_luid: str,
        query: Dict[str, Any],
        timeout_ms: Optional[int] = None,
    ) -> Any:
        """Execute a compiled query; may raise or return an error-bearing payload."""
        ...

    async def read_metadata(self, datasource_luid: str) -> Any:
        """Raw field schema for a datasource."""
        ...


def unwrap_json(payload: Any) -> Any:
    """Unwrap a single text item (or a string) holding JSON; return the input otherwise."""
    text = None
    if isinstance(payload, str):
        text = payload
    elif (
        isinstance(payload, list)
        and len(payload) == 1
        and isinstance(payload[0], dict)
        and isinstance(payload[0].get("text"), str)
    ):
        text = payload[0]["text"]
    if text is None:
        return payload
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return payload
