"""
Agent capability layer.

Phases treat every language-model agent as `run(agent, messages) -> text`.
This module provides the message helpers, the AgentRunner protocol, an
OpenAI-backed runner with transport retries via tenacity, and helpers to
pull JSON out of model text.
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import openai
from openai import AsyncOpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vizql_copilot.shared.logging.analysis_log import AnalysisLog


logger = logging.getLogger(__name__)

Message = Dict[str, str]

# Module-level cache for the OpenAI client
_client: Optional[AsyncOpenAI] = None

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@dataclass(frozen=True)
class AgentSpec:
    """A named agent: model plus system instructions."""

    name: str
    model: str
    instructions: str
    temperature: Optional[float] = None


@dataclass
class AgentResult:
    """Raw agent output: final text, output items and token usage."""

    final_output: Optional[str] = None
    output: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[Dict[str, int]] = None


class AgentRunner(Protocol):
    async def run(self, agent: AgentSpec, messages: List[Message]) -> AgentResult: ...


def user_msg(content: str) -> Message:
    return {"role": "user", "content": content}


def system_msg(content: str) -> Message:
    return {"role": "system", "content": content}


def context_block(key: str, value: Any) -> Message:
    """System message in the KEY_JSON=<json> convention the prompts expect."""
    return system_msg(f"{key}={json.dumps(value, ensure_ascii=False, default=str)}")


def extract_text(result: Optional[AgentResult]) -> str:
    """Prefer `final_output`; otherwise join the text items of `output`."""
    if result is None:
        return ""
    if isinstance(result.final_output, str) and result.final_output.strip():
        return result.final_output
    pieces = []
    for item in result.output or []:
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            pieces.append(item["text"])
    return "\n".join(pieces)


def extract_json_from_response(raw_response: str) -> str:
    """
    Extract JSON content from model text.

    Handles raw JSON, JSON inside markdown code fences and JSON preceded
    by prose. Returns the best candidate substring; parsing is left to
    the caller.
    """
    content = (raw_response or "").strip()

    match = re.search(r"```(?:json)?\s*([\s\S]*?)```", content)
    if match:
        content = match.group(1).strip()

    start = content.find("{")
    if start > 0:
        content = content[start:]

    if content.startswith("{"):
        depth = 0
        in_string = False
        escaped = False
        for i, char in enumerate(content):
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return content[: i + 1]

    return content


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse model text into a JSON object, or None if it is not one."""
    try:
        data = json.loads(extract_json_from_response(text))
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def get_cached_client() -> AsyncOpenAI:
    """
    Returns a cached AsyncOpenAI client.

    Uses OPENAI_API_KEY (and OPENAI_BASE_URL when set). The client is
    created once and reused for all subsequent calls.
    """
    global _client
    if _client is None:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY environment variable is not set. "
                "Please set it to your OpenAI API key."
            )
        base_url = os.environ.get("OPENAI_BASE_URL") or None
        _client = AsyncOpenAI(api_key=api_key, base_url=base_url)
    return _client


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type(_TRANSIENT_ERRORS),
    reraise=True,
)
async def call_llm_with_usage(
    client: AsyncOpenAI,
    messages: List[Message],
    model: str,
    temperature: Optional[float] = None,
) -> Tuple[str, Dict[str, int]]:
    """
    Call the Chat Completions API and return content with token usage.

    Transient transport errors are retried with exponential backoff;
    everything else is raised to the caller.
    """
    kwargs: Dict[str, Any] = {"model": model, "messages": messages}
    if temperature is not None:
        kwargs["temperature"] = temperature

    response = await client.chat.completions.create(**kwargs)

    content = (response.choices[0].message.content or "").strip()
    usage = {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}
    if response.usage is not None:
        usage = {
            "input_tokens": response.usage.prompt_tokens,
            "output_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        }
    return content, usage


class OpenAIAgentRunner:
    """AgentRunner backed by the OpenAI Chat Completions API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client

    async def run(self, agent: AgentSpec, messages: List[Message]) -> AgentResult:
        client = self._client or get_cached_client()
        full_messages = [system_msg(agent.instructions), *messages]
        content, usage = await call_llm_with_usage(
            client, full_messages, model=agent.model, temperature=agent.temperature
        )
        return AgentResult(
            final_output=content,
            output=[{"type": "output_text", "text": content}],
            usage=usage,
        )


class LoggingAgentRunner:
    """
    Wraps another runner and records each call in the session analysis log.
    """

    def __init__(self, inner: AgentRunner, analysis_log: Optional[AnalysisLog] = None, session_id: str = "unknown"):
        self._inner = inner
        self._analysis_log = analysis_log
        self._log = f"[session={session_id}] [llm] "

    async def run(self, agent: AgentSpec, messages: List[Message]) -> AgentResult:
        logger.info(f"{self._log}Calling agent | agent={agent.name}, model={agent.model}, messages={len(messages)}")
        start_time = time.perf_counter()
        result = await self._inner.run(agent, messages)
        duration_ms = (time.perf_counter() - start_time) * 1000

        usage = (result.usage if result else None) or {}
        logger.info(
            f"{self._log}Agent responded | agent={agent.name}, duration={duration_ms:.0f}ms, "
            f"tokens_in={usage.get('input_tokens', 0)}, tokens_out={usage.get('output_tokens', 0)}"
        )
        if self._analysis_log is not None:
            self._analysis_log.log_llm_call(
                agent=agent.name,
                model=agent.model,
                duration_ms=duration_ms,
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
                response=extract_text(result),
            )
        return result
