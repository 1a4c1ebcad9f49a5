"""
Tests for the agent capability helpers, the OpenAI runner and the
session analysis log.
"""

import asyncio
import json
import logging
from types import SimpleNamespace

from vizql_copilot.shared.llm.client import (
    AgentResult,
    AgentSpec,
    LoggingAgentRunner,
    OpenAIAgentRunner,
    extract_json_from_response,
    extract_text,
    parse_json_object,
)
from vizql_copilot.shared.logging.analysis_log import AnalysisLog, calculate_cost
from vizql_copilot.shared.logging.config import StructuredFormatter, setup_logging, split_tags
from vizql_copilot.tests.fakes import FakeAgentRunner


AGENT = AgentSpec(name="triage", model="gpt-4.1-mini", instructions="You triage requests.")


def _read_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class _FakeCompletions:
    def __init__(self):
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content='  {"needsData": true}  '))],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=4, total_tokens=16),
        )


class TestJsonExtraction:
    """Tests for pulling JSON out of model text."""

    def test_code_fence(self):
        """JSON inside a fenced block is extracted."""
        text = 'Sure:\n```json\n{"a": 1}\n```'
        assert extract_json_from_response(text) == '{"a": 1}'

    def test_prose_prefix_and_suffix(self):
        """Leading and trailing prose is dropped."""
        assert parse_json_object('Here you go {"a": {"b": "}"}} thanks') == {"a": {"b": "}"}}

    def test_not_an_object(self):
        """Arrays and prose are not objects."""
        assert parse_json_object("[1, 2]") is None
        assert parse_json_object("no json here") is None

    def test_extract_text_falls_back_to_items(self):
        """Output items are joined when there is no final output."""
        result = AgentResult(final_output=" ", output=[{"type": "output_text", "text": "a"}, {"text": "b"}])
        assert extract_text(result) == "a\nb"
        assert extract_text(None) == ""


class TestOpenAIAgentRunner:
    """Tests for OpenAIAgentRunner."""

    def test_instructions_and_usage(self):
        """The agent's instructions lead the messages and usage is mapped."""
        completions = _FakeCompletions()
        client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
        runner = OpenAIAgentRunner(client=client)
        spec = AgentSpec(name="query-compiler", model="gpt-4.1-mini", instructions="Compile.", temperature=0.0)

        result = asyncio.run(runner.run(spec, [{"role": "user", "content": "sales"}]))

        request = completions.requests[0]
        assert request["messages"][0] == {"role": "system", "content": "Compile."}
        assert request["temperature"] == 0.0
        assert result.final_output == '{"needsData": true}'
        assert result.usage == {"input_tokens": 12, "output_tokens": 4, "total_tokens": 16}


class TestLoggingAgentRunner:
    """Tests for LoggingAgentRunner."""

    def test_calls_recorded(self, tmp_path):
        """Each call lands in the analysis log with its token usage."""
        log = AnalysisLog("sess-llm", logs_dir=str(tmp_path))
        runner = LoggingAgentRunner(FakeAgentRunner({"triage": ["ok"]}), log, "sess-llm")

        result = asyncio.run(runner.run(AGENT, [{"role": "user", "content": "hi"}]))

        assert result.final_output == "ok"
        entry = _read_lines(tmp_path / "sess-llm" / "analysis.jsonl")[0]
        assert entry["type"] == "llm_call"
        assert entry["agent"] == "triage"
        assert entry["input_tokens"] == 10
        assert entry["response"] == "ok"


class TestAnalysisLog:
    """Tests for AnalysisLog."""

    def test_events_and_summary(self, tmp_path):
        """Events are recorded, deltas skipped, and totals summarized."""
        log = AnalysisLog("sess-1", logs_dir=str(tmp_path))

        log.log_event("fetch:start", {"max_attempts": 3})
        log.log_event("lightweight:delta", {"text": "x"})
        log.log_llm_call("triage", "gpt-4.1-mini", 120.0, 1000, 500)
        summary = log.log_turn_summary("ok", 250.0)

        lines = _read_lines(tmp_path / "sess-1" / "analysis.jsonl")
        assert [line["type"] for line in lines] == ["event", "llm_call", "turn_summary"]
        assert summary["turn"] == 1
        assert summary["turn_usage"]["events"] == 1
        assert summary["turn_usage"]["total_tokens"] == 1500
        assert summary["turn_usage"]["cost_usd"] == round(calculate_cost("gpt-4.1-mini", 1000, 500), 6)

    def test_turn_counters_reset(self, tmp_path):
        """Turn usage restarts after each summary while session usage accumulates."""
        log = AnalysisLog("sess-3", logs_dir=str(tmp_path))

        log.log_llm_call("triage", "gpt-4.1-mini", 10.0, 100, 10)
        log.log_turn_summary("ok", 50.0)
        log.log_llm_call("triage", "gpt-4.1-mini", 10.0, 200, 20)
        second = log.log_turn_summary("clarify", 40.0)

        assert second["turn"] == 2
        assert second["turn_usage"]["input_tokens"] == 200
        assert second["session_usage"]["input_tokens"] == 300
        assert second["session_usage"]["llm_calls"] == 2
        assert [e["type"] for e in log.read_entries()].count("turn_summary") == 2

    def test_write_failure_never_raises(self, tmp_path):
        """An unwritable log directory is only logged."""
        blocker = tmp_path / "file"
        blocker.write_text("")
        log = AnalysisLog("sess-2", logs_dir=str(blocker))

        log.log_event("fetch:start")

    def test_unknown_model_costs_nothing(self):
        """Models without a price entry cost zero."""
        assert calculate_cost("some-new-model", 1000, 1000) == 0.0
        assert calculate_cost("gpt-4.1", 1_000_000, 0) == 2.0


class TestStructuredLogging:
    """Tests for the JSON formatter."""

    def test_formatter_includes_extra(self):
        """Records carry level, logger, message and extra fields."""
        record = logging.LogRecord("vizql_copilot.test", logging.INFO, "", 0, "hello %s", ("there",), None)
        record.extra = {"phase": "fetch"}

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["message"] == "hello there"
        assert data["extra"] == {"phase": "fetch"}

    def test_prefix_tags_lifted(self):
        """Session and node tags become fields and leave the message."""
        message = "[session=s-1] [graph=orchestrator] [node=fetch] Fetch failed | attempts=3"
        record = logging.LogRecord("vizql_copilot.graph", logging.WARNING, "", 0, message, (), None)

        data = json.loads(StructuredFormatter().format(record))

        assert data["session"] == "s-1"
        assert data["node"] == "fetch"
        assert data["message"] == "Fetch failed | attempts=3"

    def test_split_tags_bare(self):
        """Bare tags map to True."""
        assert split_tags("[session=x] [llm] Calling agent") == ({"session": "x", "llm": True}, "Calling agent")

    def test_setup_logging_writes_file(self, tmp_path):
        """setup_logging attaches a JSON file handler when asked."""
        log_file = tmp_path / "app.jsonl"
        logger = setup_logging(log_file=str(log_file), logger_name="vizql_copilot_test_setup")
        try:
            logger.info("started")
            for handler in logger.handlers:
                handler.flush()
            assert json.loads(log_file.read_text().splitlines()[0])["message"] == "started"
        finally:
            for handler in logger.handlers:
                handler.close()
            logger.handlers = []
