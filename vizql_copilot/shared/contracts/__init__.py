"""Contracts for phase handoffs: queries, analysis plans and progress events."""

from vizql_copilot.shared.contracts.query_spec import QuerySpec, QueryPayload
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan, AnalysisPlannerOutput
from vizql_copilot.shared.contracts.events import OrchestratorEvent

__all__ = ["QuerySpec", "QueryPayload", "AnalysisPlan", "AnalysisPlannerOutput", "OrchestratorEvent"]
