"""
Tests for the Tableau MCP connector's result conversion and tool calls.
"""

import asyncio
from types import SimpleNamespace

import pytest

from vizql_copilot.connector.base import ConnectorTimeout, unwrap_json
from vizql_copilot.connector.tableau import METADATA_TOOL, QUERY_TOOL, TableauMcpConnector, tool_result_to_plain


def _tool_result(*texts, is_error=False):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=t) for t in texts], isError=is_error)


class _FakeSession:
    """Stands in for an initialized mcp.ClientSession."""

    def __init__(self, result=None, delay_s=0.0):
        self.result = result if result is not None else _tool_result('{"data": []}')
        self.delay_s = delay_s
        self.calls = []

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self.result


def _connected(session):
    connector = TableauMcpConnector(server_path="/opt/tableau-mcp/build/index.js")
    connector._session = session
    return connector


class TestToolResultToPlain:
    """Tests for tool_result_to_plain."""

    def test_text_items(self):
        """Text content becomes plain text items."""
        assert tool_result_to_plain(_tool_result('{"data": [1]}')) == [{"type": "text", "text": '{"data": [1]}'}]

    def test_error_flag_kept(self):
        """Results flagged as errors keep the flag."""
        plain = tool_result_to_plain(_tool_result("Unknown field 'Revenue'", is_error=True))
        assert plain == {"isError": True, "content": [{"type": "text", "text": "Unknown field 'Revenue'"}]}

    def test_non_text_parts(self):
        """Non-text parts keep only their type."""
        result = SimpleNamespace(content=[SimpleNamespace(type="image")], isError=False)
        assert tool_result_to_plain(result) == [{"type": "image"}]


class TestUnwrapJson:
    """Tests for unwrap_json."""

    def test_single_text_item(self):
        """One text item holding JSON is decoded."""
        assert unwrap_json([{"type": "text", "text": '{"data": []}'}]) == {"data": []}

    def test_string(self):
        """A JSON string is decoded."""
        assert unwrap_json('[1, 2]') == [1, 2]

    def test_not_json_returned_as_is(self):
        """Text that is not JSON is left alone."""
        payload = [{"type": "text", "text": "Error: bad query"}]
        assert unwrap_json(payload) is payload


class TestTableauMcpConnector:
    """Tests for TableauMcpConnector tool calls."""

    def test_query_arguments(self):
        """Queries call the query tool with the datasource and the query."""
        session = _FakeSession()
        connector = _connected(session)

        result = asyncio.run(connector.query_datasource("ds-1", {"fields": [{"fieldCaption": "Sales"}]}))

        assert session.calls == [(QUERY_TOOL, {"datasourceLuid": "ds-1", "query": {"fields": [{"fieldCaption": "Sales"}]}})]
        assert result == [{"type": "text", "text": '{"data": []}'}]

    def test_metadata_unwrapped(self):
        """Metadata is returned as decoded JSON."""
        session = _FakeSession(_tool_result('{"data": [{"fieldCaption": "Sales"}]}'))
        connector = _connected(session)

        assert asyncio.run(connector.read_metadata("ds-1")) == {"data": [{"fieldCaption": "Sales"}]}
        assert session.calls[0][0] == METADATA_TOOL

    def test_timeout(self):
        """A call slower than its budget raises ConnectorTimeout."""
        connector = _connected(_FakeSession(delay_s=1.0))

        with pytest.raises(ConnectorTimeout) as exc_info:
            asyncio.run(connector.query_datasource("ds-1", {"fields": []}, timeout_ms=20))

        assert str(exc_info.value) == "tableau_client_timeout"
