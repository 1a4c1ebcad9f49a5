"""
VizQL Copilot: natural-language analytics over Tableau datasources.

This package contains:
- shared/: Common infrastructure (config, errors, cancellation, retry, events, LLM layer, logging, contracts)
- connector/: Datasource connector protocol and the Tableau MCP connector
- metadata/: Field catalog cache
- triage/, selection/, planning/, execution/, summary/: The turn phases
- graph/: LangGraph orchestrator and its HTTP endpoints
"""

from vizql_copilot.graph.build import Orchestrator, TurnResult, create_orchestrator_graph

__all__ = ["Orchestrator", "TurnResult", "create_orchestrator_graph"]
