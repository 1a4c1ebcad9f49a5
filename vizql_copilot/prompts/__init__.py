"""System prompts for each agent."""

from vizql_copilot.prompts.templates import PROMPTS, load_prompt

__all__ = ["PROMPTS", "load_prompt"]
