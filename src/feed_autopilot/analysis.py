from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .llm import AnalysisModelClient, build_analysis_client, coerce_agent_result
from .models import AgentResult, AutomationMode, PermissionRequest, PermissionState

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are a conversion-rate and product-feed analyst for an e-commerce store.
Analyze the store identified as: {store_identifier}

Return:
- analysis: a short data_summary and the key_findings
- recommendations across pricing, operations, inventory, marketing and gmc
- action_items with a timeline of immediate, short-term or long-term
- metrics with the current conversion rate and the potential improvement
- optimization_breakdown: one entry per feed category (titles, missing_attributes,
  images, policy, feed_errors) with the number of products affected, an impact
  estimate and the concrete per-product attribute changes you propose
- total_optimizations: the sum of the category counts
- permission_request: set requesting=true only if applying these changes
  automatically would clearly help the merchant
"""


class AnalysisAgent(Protocol):
    def analyze(self, store_identifier: str) -> AgentResult:
        ...


class LLMAnalysisAgent:
    """Store analysis backed by an OpenAI chat model with structured output."""

    def __init__(self, *, model_name: str, client: AnalysisModelClient | None = None) -> None:
        self.model_name = model_name
        self._client = client

    def _get_client(self) -> AnalysisModelClient:
        if self._client is None:
            self._client = build_analysis_client(model_name=self.model_name)
        return self._client

    def analyze(self, store_identifier: str) -> AgentResult:
        store_identifier = store_identifier.strip()
        if not store_identifier:
            raise ValueError("store_identifier must be non-empty")
        logger.info("Requesting store analysis for %s", store_identifier)
        result = self._get_client().invoke(ANALYSIS_PROMPT.format(store_identifier=store_identifier))
        logger.info(
            "Analysis returned %d recommendation(s), %d optimization(s)",
            len(result.recommendations),
            result.total_optimizations,
        )
        return result


def load_agent_result(path: Path) -> AgentResult:
    """Read a saved analysis payload (raw agent JSON or a ``{"result": ...}`` envelope).

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If the payload does not parse or validate.
    """
    if not path.is_file():
        raise FileNotFoundError(f"analysis result not found: {path}")
    return coerce_agent_result(path.read_text(encoding="utf-8"))


@dataclass(frozen=True)
class PermissionOffer:
    """One-time suggestion from the agent to enable automation."""

    request: PermissionRequest
    _grant: Callable[[AutomationMode], PermissionState]

    @property
    def scope(self) -> list[str]:
        return list(self.request.scope)

    @property
    def actions_planned(self) -> int:
        return self.request.actions_planned

    @property
    def estimated_improvements(self) -> str:
        return self.request.estimated_improvements

    def accept(self, mode: AutomationMode = AutomationMode.REVIEW) -> PermissionState:
        return self._grant(AutomationMode(mode))


def permission_offer(
    result: AgentResult,
    grant: Callable[[AutomationMode], PermissionState],
) -> PermissionOffer | None:
    request = result.permission_request
    if request is None or not request.requesting:
        return None
    logger.info("Agent requests automation for %s (%d action(s) planned)", request.scope, request.actions_planned)
    return PermissionOffer(request=request, _grant=grant)
