"""LLM client utilities."""

from vizql_copilot.shared.llm.client import AgentSpec, AgentResult, OpenAIAgentRunner, get_cached_client

__all__ = ["AgentSpec", "AgentResult", "OpenAIAgentRunner", "get_cached_client"]
