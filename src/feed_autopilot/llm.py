"""OpenAI access for the store analysis agent."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .models import AgentResult

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT_SECONDS = 120
_MAX_RETRIES = 3


class SupportsInvoke(Protocol):
    """Anything LangChain-shaped that answers a prompt through ``invoke``."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when it exists.

    Raises:
        RuntimeError: If the key is still missing.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to call the store analysis agent")
    return key


def _unwrap(payload: Any) -> Any:
    # include_raw=True envelope from with_structured_output.
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        if payload["parsing_error"] is not None:
            raise RuntimeError(f"analysis output parsing failed: {payload['parsing_error']!r}")
        payload = payload["parsed"]
        if payload is None:
            raise RuntimeError("analysis output carried no parsed payload")
    # Saved dashboard responses: {"status": ..., "result": {...}}.
    if isinstance(payload, dict) and isinstance(payload.get("result"), dict):
        payload = payload["result"]
    content = getattr(payload, "content", None)
    if isinstance(content, str):
        payload = content
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"analysis output parsing failed: {exc}") from exc
    return payload


def coerce_agent_result(raw_output: Any) -> AgentResult:
    """Validate a model reply or a saved analysis response into an ``AgentResult``.

    Accepts the structured-output envelope, an ``AgentResult`` or any other
    pydantic model, a chat message or string holding JSON, a plain dict, and
    the dashboard's ``{"result": ...}`` wrapper around any of the dict forms.

    Raises:
        RuntimeError: If the payload cannot be parsed or does not validate.
    """
    payload = _unwrap(raw_output)
    if isinstance(payload, AgentResult):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(f"analysis output has unsupported payload type {type(payload).__name__}")
    try:
        return AgentResult.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"analysis output failed validation: {exc}") from exc


@dataclass(slots=True)
class AnalysisModelClient:
    """Sends analysis prompts to a runnable and validates every reply."""

    runnable: SupportsInvoke
    model_name: str = "unknown"

    def invoke(self, prompt: str) -> AgentResult:
        result = coerce_agent_result(self.runnable.invoke(prompt))
        logger.debug("Model %s proposed %d optimization(s)", self.model_name, result.total_optimizations)
        return result


def build_analysis_client(
    *,
    model_name: str,
    temperature: float = 0.0,
    repo_root: Path | None = None,
) -> AnalysisModelClient:
    """Bind ``AgentResult`` as the structured output of an OpenAI chat model.

    Strict schema mode stays off: proposed changes carry free-form attribute
    maps that strict JSON schemas cannot express.

    Raises:
        ValueError: If ``model_name`` is empty.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    model = ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=_REQUEST_TIMEOUT_SECONDS,
        max_retries=_MAX_RETRIES,
    )
    runnable = model.with_structured_output(AgentResult, method="function_calling", include_raw=True)
    logger.debug("Analysis model ready: %s", model_name)
    return AnalysisModelClient(runnable=runnable, model_name=model_name)
