"""
Tableau connector over the Tableau MCP server.

Launches the MCP server as a stdio subprocess, keeps one ClientSession
open for the life of the connector and exposes the two tools the pipeline
needs: `query-datasource` and `get-datasource-metadata`.
"""

import asyncio
import logging
import os
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from vizql_copilot.connector.base import ConnectorTimeout, unwrap_json


logger = logging.getLogger(__name__)

QUERY_TOOL = "query-datasource"
METADATA_TOOL = "get-datasource-metadata"

_FORWARDED_ENV = ("SERVER", "SITE_NAME", "PAT_NAME", "PAT_VALUE", "TRANSPORT")


def tool_result_to_plain(result: Any) -> Any:
    """
    Convert an MCP CallToolResult into plain Python data.

    Text content becomes `{"type": "text", "text": ...}` items so that the
    result can be unwrapped and error-scanned without MCP types. A result
    flagged `isError` is returned as a dict carrying that flag.
    """
    content = getattr(result, "content", None)
    if content is None:
        return result
    items: List[Dict[str, Any]] = []
    for part in content:
        text = getattr(part, "text", None)
        if isinstance(text, str):
            items.append({"type": "text", "text": text})
        else:
            items.append({"type": getattr(part, "type", "unknown")})
    if getattr(result, "isError", False):
        return {"isError": True, "content": items}
    return items


class TableauMcpConnector:
    """
    DatasourceConnector backed by the Tableau MCP server.

    Use as an async context manager, or call connect()/close().

    Args:
        command: Executable used to launch the server (default: node)
        server_path: Path to the server entry point (TABLEAU_MCP_FILEPATH)
        default_timeout_ms: Timeout applied when a call gives none
    """

    def __init__(
        self,
        command: str = "node",
        server_path: Optional[str] = None,
        default_timeout_ms: int = 15000,
    ):
        self.command = command
        self.server_path = server_path or os.environ.get("TABLEAU_MCP_FILEPATH", "")
        self.default_timeout_ms = default_timeout_ms
        self._session: Optional[ClientSession] = None
        self._exit_stack = AsyncExitStack()
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "TableauMcpConnector":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        async with self._lock:
            if self._session is not None:
                return
            env = {k: os.environ[k] for k in _FORWARDED_ENV if k in os.environ}
            env["PATH"] = os.environ.get("PATH", "")
            server_params = StdioServerParameters(
                command=self.command,
                args=[self.server_path] if self.server_path else [],
                env=env,
            )
            logger.info(f"Connecting to Tableau MCP server | command={self.command}, path={self.server_path}")
            stdio, write = await self._exit_stack.enter_async_context(stdio_client(server_params))
            session = await self._exit_stack.enter_async_context(ClientSession(stdio, write))
            await session.initialize()
            self._session = session

    async def close(self) -> None:
        try:
            await self._exit_stack.aclose()
        finally:
            self._session = None

    async def _call(self, tool: str, arguments: Dict[str, Any], timeout_ms: Optional[int]) -> Any:
        if self._session is None:
            await self.connect()
        budget_s = (timeout_ms or self.default_timeout_ms) / 1000
        try:
            result = await asyncio.wait_for(self._session.call_tool(tool, arguments), timeout=budget_s)
        except asyncio.TimeoutError:
            raise ConnectorTimeout("tableau_client_timeout")
        return tool_result_to_plain(result)

    async def query_datasource(
        self,
        datasource_luid: str,
        query: Dict[str, Any],
        timeout_ms: Optional[int] = None,
    ) -> Any:
        return await self._call(QUERY_TOOL, {"datasourceLuid": datasource_luid, "query": query}, timeout_ms)

    async def read_metadata(self, datasource_luid: str) -> Any:
        return unwrap_json(await self._call(METADATA_TOOL, {"datasourceLuid": datasource_luid}, None))
