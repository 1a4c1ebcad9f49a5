"""Agent builders: one AgentSpec per pipeline role."""

from vizql_copilot.prompts.templates import load_prompt
from vizql_copilot.shared.config import AppConfig, DEFAULT_CONFIG
from vizql_copilot.shared.llm.client import AgentSpec


def build_agent(name: str, config: AppConfig = DEFAULT_CONFIG, temperature=None) -> AgentSpec:
    return AgentSpec(
        name=name,
        model=config.model_for(name),
        instructions=load_prompt(name),
        temperature=temperature,
    )


def build_triage_agent(config: AppConfig = DEFAULT_CONFIG) -> AgentSpec:
    return build_agent("triage", config)


def build_field_selector_agent(config: AppConfig = DEFAULT_CONFIG) -> AgentSpec:
    return build_agent("field-selector", config)


def build_analysis_planner_agent(config: AppConfig = DEFAULT_CONFIG) -> AgentSpec:
    return build_agent("analysis-planner", config)


def build_query_compiler_agent(config: AppConfig = DEFAULT_CONFIG) -> AgentSpec:
    return build_agent("query-compiler", config, temperature=0.0)


def build_lightweight_summarizer_agent(config: AppConfig = DEFAULT_CONFIG) -> AgentSpec:
    return build_agent("lightweight-summarizer", config)
