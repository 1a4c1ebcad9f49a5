"""
Top-level orchestrator graph.

Sequences the turn phases:
    triage -> metadata -> selector -> planner -> fetch -> summarize -> finish

The router re-evaluates after every phase and diverts to `cancelled` as
soon as the turn's abort signal fires.
"""

from vizql_copilot.graph.build import create_orchestrator_graph, Orchestrator

__all__ = ["create_orchestrator_graph", "Orchestrator"]
