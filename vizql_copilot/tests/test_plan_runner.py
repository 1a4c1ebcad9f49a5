"""
Tests for two-stage planning: the analysis stage with its retry hint and
the single-shot compile stage.
"""

import asyncio
import json

import pytest
from pydantic import ValidationError

from vizql_copilot.planning.hints import NOT_JSON_HINT, format_retry_hint, hints_from_validation_error
from vizql_copilot.planning.plan_runner import PlanRunner, parse_compiler_output, summarize_query
from vizql_copilot.shared.config import AppConfig
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlannerOutput
from vizql_copilot.shared.contracts.query_spec import QuerySpec
from vizql_copilot.shared.errors import ErrorCode
from vizql_copilot.shared.events import EventBus
from vizql_copilot.shared.llm.agents import build_analysis_planner_agent, build_query_compiler_agent
from vizql_copilot.shared.schemas.session import FilterHint, TriageContext
from vizql_copilot.tests.fakes import FakeAgentRunner, analysis_json, compiler_json, last_text


ALLOWED = [{"fieldCaption": "Sales", "function": "SUM"}, {"fieldCaption": "Region"}, {"fieldCaption": "Order Date"}]

TOPN_QUERY = {
    "fields": [{"fieldCaption": "Region"}, {"fieldCaption": "Sales", "function": "SUM"}],
    "filters": [{"filterType": "TOPN", "field": {"fieldCaption": "Region"}, "howMany": 5}],
}


def _make_runner(analysis, compiler=None, config=None):
    runner = FakeAgentRunner(
        {
            "analysis-planner": analysis,
            "query-compiler": compiler or [compiler_json()],
        }
    )
    events = EventBus()
    plan_runner = PlanRunner(
        runner,
        build_analysis_planner_agent(),
        build_query_compiler_agent(),
        events,
        config or AppConfig(),
    )
    return plan_runner, runner, events


def _run(plan_runner, message="total sales", triage_context=None):
    return asyncio.run(plan_runner.run(message, "ds-1", ALLOWED, triage_context=triage_context))


class TestAnalysisStage:
    """Tests for the analysis stage."""

    def test_happy_path(self):
        """A valid plan and compiled query produce a payload bound to the caller's datasource."""
        plan_runner, runner, events = _make_runner([analysis_json()])

        result = _run(plan_runner)

        assert result.ok
        assert result.attempts == 1
        assert result.analysis_plan.steps[0].id == "s1"
        assert result.query_payload.datasource.datasource_luid == "ds-1"
        assert result.query_summary == "SUM(Sales)"
        assert result.usage["input_tokens"] == 20
        assert events.types() == ["analysis:start", "analysis:done", "compile:start", "compile:done"]

    def test_retry_with_targeted_hint(self):
        """An unsupported filterType is retried once with a hint naming it."""
        plan_runner, runner, events = _make_runner([analysis_json(query=TOPN_QUERY), analysis_json()])

        result = _run(plan_runner)

        assert result.ok
        assert result.attempts == 2
        hint = last_text(runner.calls_for("analysis-planner")[1], "RETRY_HINT=")
        assert hint is not None
        assert "filterType 'TOPN' is not supported" in hint
        assert events.count("analysis:retry") == 1

    def test_not_json_retried(self):
        """Prose output is retried with the JSON-only hint."""
        plan_runner, runner, _ = _make_runner(["Here is my plan: ...", analysis_json()])

        result = _run(plan_runner)

        assert result.ok
        assert NOT_JSON_HINT in last_text(runner.calls_for("analysis-planner")[1], "RETRY_HINT=")

    def test_step_query_outside_allow_list_retried(self):
        """A step query using a field outside the allow-list is a validation failure."""
        bad = analysis_json(query={"fields": [{"fieldCaption": "Profit", "function": "SUM"}]})
        plan_runner, runner, _ = _make_runner([bad, analysis_json()])

        result = _run(plan_runner)

        assert result.ok
        assert "'Profit' is not in the allowed fields" in last_text(
            runner.calls_for("analysis-planner")[1], "RETRY_HINT="
        )

    def test_validation_failure_after_retry(self):
        """Two invalid plans end planning without compiling."""
        plan_runner, runner, events = _make_runner([analysis_json(steps=[])])

        result = _run(plan_runner)

        assert not result.ok
        assert result.code == ErrorCode.ANALYSIS_PLAN_VALIDATION_FAILED
        assert result.error.startswith("analysis_plan_validation_failed: ")
        assert result.attempts == 2
        assert runner.calls_for("query-compiler") == []
        assert events.types()[-1] == "analysis:error"

    def test_agent_failure_not_retried(self):
        """A transport failure is a dependency failure and is not retried."""
        plan_runner, runner, _ = _make_runner([RuntimeError("upstream 503")])

        result = _run(plan_runner)

        assert result.code == ErrorCode.DEPENDENCY_FAILED
        assert result.attempts == 1
        assert "upstream 503" in result.error

    def test_attempt_bound_from_config(self):
        """analysis_max_attempts bounds the analysis stage."""
        plan_runner, runner, _ = _make_runner([analysis_json(steps=[])], config=AppConfig(analysis_max_attempts=1))

        result = _run(plan_runner)

        assert result.attempts == 1
        assert len(runner.calls_for("analysis-planner")) == 1

    def test_triage_context_forwarded(self):
        """Triage brief and filter hints are passed as context blocks."""
        plan_runner, runner, _ = _make_runner([analysis_json()])
        triage = TriageContext(
            brief={"intent": "total"},
            filter_hints=[FilterHint(field_caption="Region", operator="IN", values=["West"])],
        )

        _run(plan_runner, triage_context=triage)

        messages = runner.calls_for("analysis-planner")[0]
        assert last_text(messages, "TRIAGE_BRIEF_JSON=") is not None
        assert "West" in last_text(messages, "TRIAGE_FILTER_HINTS_JSON=")


class TestCompileStage:
    """Tests for the compile stage."""

    def test_compiler_invalid_output(self):
        """Compiler output that is not a query fails with a builder code."""
        plan_runner, _, events = _make_runner([analysis_json()], compiler=["no idea"])

        result = _run(plan_runner)

        assert not result.ok
        assert result.code == ErrorCode.BUILDER_VALIDATION
        assert result.analysis_plan is not None
        assert events.types()[-1] == "compile:error"

    def test_compiler_failure_is_dependency(self):
        """A compiler transport failure is a dependency failure."""
        plan_runner, _, _ = _make_runner([analysis_json()], compiler=[RuntimeError("timeout")])

        result = _run(plan_runner)

        assert result.code == ErrorCode.DEPENDENCY_FAILED

    def test_compiler_receives_plan_and_step_query(self):
        """The compiler sees the analysis plan and the step query."""
        plan_runner, runner, _ = _make_runner([analysis_json()])

        _run(plan_runner)

        messages = runner.calls_for("query-compiler")[0]
        assert last_text(messages, "ANALYSIS_PLAN_JSON=") is not None
        assert last_text(messages, "STEP_QUERY_JSON=") is not None


class TestParseCompilerOutput:
    """Tests for parse_compiler_output."""

    def test_datasource_injected(self):
        """Model-supplied datasources are ignored."""
        text = json.dumps({"datasource": {"datasourceLuid": "evil"}, "query": {"fields": [{"fieldCaption": "Sales"}]}})
        payload, error = parse_compiler_output(text, "ds-1")
        assert error == ""
        assert payload.datasource.datasource_luid == "ds-1"

    def test_bare_query_and_fences(self):
        """A bare query object inside a code fence is accepted."""
        text = "```json\n{\"fields\": [{\"fieldCaption\": \"Sales\", \"function\": \"sum\"}]}\n```"
        payload, _ = parse_compiler_output(text, "ds-1")
        assert payload.query.to_wire()["fields"] == [{"fieldCaption": "Sales", "function": "SUM"}]

    def test_empty_fields_rejected(self):
        """A query without fields fails validation."""
        payload, error = parse_compiler_output(json.dumps({"query": {"fields": []}}), "ds-1")
        assert payload is None
        assert error.startswith("compiler output failed validation")


class TestHints:
    """Tests for retry hint generation."""

    def test_union_tag_hint(self):
        """An unknown filterType becomes a named hint."""
        with pytest.raises(ValidationError) as exc_info:
            AnalysisPlannerOutput.model_validate(json.loads(analysis_json(query=TOPN_QUERY)))
        hints = hints_from_validation_error(exc_info.value)
        assert hints[0].startswith("filterType 'TOPN' is not supported")

    def test_format_retry_hint(self):
        """Hints are rendered as one RETRY_HINT block."""
        assert format_retry_hint(["a", "b"]) == "RETRY_HINT=Your previous answer was rejected. Fix: a; b"


class TestSummarizeQuery:
    """Tests for summarize_query."""

    def test_date_range(self):
        """Date ranges are narrated."""
        query = QuerySpec.model_validate(
            {
                "fields": [{"fieldCaption": "Sales", "function": "SUM"}],
                "filters": [
                    {
                        "filterType": "QUANTITATIVE_DATE",
                        "field": {"fieldCaption": "Order Date"},
                        "quantitativeFilterType": "RANGE",
                        "minDate": "2024-01-01",
                        "maxDate": "2024-12-31",
                    }
                ],
            }
        )
        assert summarize_query(query) == "SUM(Sales) from 2024-01-01 to 2024-12-31"

    def test_relative_date(self):
        """LASTN filters read naturally."""
        query = QuerySpec.model_validate(
            {
                "fields": [{"fieldCaption": "Sales", "function": "SUM"}],
                "filters": [
                    {
                        "filterType": "DATE",
                        "field": {"fieldCaption": "Order Date"},
                        "periodType": "MONTHS",
                        "dateRangeType": "LASTN",
                        "rangeN": 3,
                    }
                ],
            }
        )
        assert summarize_query(query) == "SUM(Sales) for the last 3 months"
