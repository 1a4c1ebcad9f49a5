"""
Code-interpreter summarization via the OpenAI Responses API.

Artifacts are uploaded as files, attached to an auto container for the
code_interpreter tool and analysed by the analyst agent. Uploaded files
are removed afterwards unless configured otherwise.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI

from vizql_copilot.shared.artifacts import ArtifactStore
from vizql_copilot.shared.contracts.analysis_plan import AnalysisPlan
from vizql_copilot.shared.llm.client import AgentSpec, get_cached_client


logger = logging.getLogger(__name__)


class CodeExecutionSummarizer(Protocol):
    async def run(
        self,
        message: str,
        artifact_paths: Sequence[str],
        analysis_plan: Optional[AnalysisPlan] = None,
    ) -> str: ...


def build_ci_input(message: str, artifact_paths: Sequence[str], analysis_plan: Optional[AnalysisPlan]) -> str:
    parts = [
        f"QUESTION={message}",
        f"ARTIFACT_PATHS_JSON={json.dumps(list(artifact_paths))}",
    ]
    if analysis_plan is not None:
        parts.append(f"ANALYSIS_PLAN_JSON={analysis_plan.model_dump_json(by_alias=True, exclude_none=True)}")
        extra: Dict[str, Any] = {}
        if analysis_plan.metrics:
            extra["metrics"] = analysis_plan.metrics
        if analysis_plan.segments:
            extra["segments"] = analysis_plan.segments
        if extra:
            parts.append(f"OPTIONAL_CONTEXT={json.dumps(extra, ensure_ascii=False)}")
    return "\n".join(parts)


def response_text(response: Any) -> str:
    """`output_text` when present, otherwise the joined output_text items."""
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text
    pieces: List[str] = []
    for item in getattr(response, "output", None) or []:
        for part in getattr(item, "content", None) or []:
            if getattr(part, "type", None) == "output_text" and isinstance(getattr(part, "text", None), str):
                pieces.append(part.text)
    return "\n".join(pieces)


class OpenAICodeInterpreter:
    """
    CodeExecutionSummarizer backed by the Responses API code_interpreter tool.

    Args:
        agent: The analyst AgentSpec (model and instructions)
        artifact_store: Resolves artifact paths for upload
        delete_files_after: Remove uploaded files once the call finishes
        client: Optional AsyncOpenAI client (defaults to the cached one)
    """

    def __init__(
        self,
        agent: AgentSpec,
        artifact_store: ArtifactStore,
        delete_files_after: bool = True,
        client: Optional[AsyncOpenAI] = None,
    ):
        self._agent = agent
        self._store = artifact_store
        self._delete_files_after = delete_files_after
        self._client = client

    async def _upload(self, client: AsyncOpenAI, artifact_paths: Sequence[str]) -> List[str]:
        file_ids = []
        for rel_path in artifact_paths:
            path = self._store.resolve(rel_path)
            try:
                with open(path, "rb") as f:
                    uploaded = await client.files.create(file=(path.name, f.read()), purpose="assistants")
                file_ids.append(uploaded.id)
            except Exception as e:
                logger.warning(f"Artifact upload failed | path={rel_path}, error={e}")
        return file_ids

    async def _cleanup(self, client: AsyncOpenAI, file_ids: List[str]) -> None:
        for file_id in file_ids:
            try:
                await client.files.delete(file_id)
            except Exception as e:
                logger.warning(f"File cleanup failed | file_id={file_id}, error={e}")

    async def run(
        self,
        message: str,
        artifact_paths: Sequence[str],
        analysis_plan: Optional[AnalysisPlan] = None,
    ) -> str:
        """Analysis text, or "" when nothing could be uploaded."""
        client = self._client or get_cached_client()
        file_ids = await self._upload(client, artifact_paths)
        if not file_ids:
            return ""
        try:
            response = await client.responses.create(
                model=self._agent.model,
                instructions=self._agent.instructions,
                input=build_ci_input(message, artifact_paths, analysis_plan),
                tools=[{"type": "code_interpreter", "container": {"type": "auto", "file_ids": file_ids}}],
            )
        finally:
            if self._delete_files_after:
                await self._cleanup(client, file_ids)
        return response_text(response)
