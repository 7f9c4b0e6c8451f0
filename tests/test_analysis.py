from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from langchain_core.messages import AIMessage
from pydantic import ValidationError

from feed_autopilot.analysis import LLMAnalysisAgent, load_agent_result, permission_offer
from feed_autopilot.control import AutopilotControl
from feed_autopilot.llm import AnalysisModelClient, coerce_agent_result
from feed_autopilot.models import (
    AgentResult,
    AutomationMode,
    CategoryKey,
    CategoryStatus,
    OptimizationPlan,
    PermissionState,
)

AGENT_PAYLOAD: dict[str, Any] = {
    "analysis": {
        "data_summary": "42 active products, 9 with feed issues",
        "key_findings": ["Titles lack brand and gender", "Two products miss GTINs"],
    },
    "recommendations": [
        {
            "category": "gmc",
            "title": "Fix missing GTINs",
            "description": "Disapproved items cannot serve in Shopping ads.",
            "priority": "high",
            "expected_impact": "+12% impressions",
        }
    ],
    "action_items": [{"task": "Resubmit feed", "timeline": "immediate"}],
    "metrics": {"current_conversion_rate": "1.8%", "potential_improvement": "+0.6pp"},
    "optimization_breakdown": [
        {
            "key": "titles",
            "count": 1,
            "impact_estimate": "+4% CTR",
            "changes": [{"product_id": "SKU-1", "attributes": {"title": "Trail Runner 2 Men's Waterproof"}}],
        },
        {
            "key": "feed_errors",
            "count": 2,
            "impact_estimate": "+12% impressions",
            "changes": [
                {"product_id": "SKU-1", "attributes": {"gtin": "00012345678905"}},
                {"product_id": "SKU-2", "attributes": {"gtin": "00098765432109"}},
            ],
        },
        {"key": "images", "count": 0},
    ],
    "total_optimizations": 3,
    "permission_request": {
        "requesting": True,
        "scope": ["titles", "feed_errors"],
        "actions_planned": 3,
        "estimated_improvements": "+15% Shopping clicks",
    },
}


class _FakeRunnable:
    def __init__(self, output: Any) -> None:
        self.output = output
        self.prompts: list[str] = []

    def invoke(self, input: Any) -> Any:  # noqa: A002
        self.prompts.append(input)
        return self.output


def test_coerce_agent_result_accepts_supported_shapes() -> None:
    from_dict = coerce_agent_result(AGENT_PAYLOAD)
    assert from_dict.total_optimizations == 3
    assert coerce_agent_result(from_dict) is from_dict
    assert coerce_agent_result({"parsed": from_dict, "parsing_error": None, "raw": "..."}) is from_dict
    assert coerce_agent_result(json.dumps(AGENT_PAYLOAD)) == from_dict
    assert coerce_agent_result(AIMessage(content=json.dumps(AGENT_PAYLOAD))) == from_dict
    assert coerce_agent_result({"status": "success", "result": AGENT_PAYLOAD}) == from_dict


def test_coerce_agent_result_rejects_bad_payloads() -> None:
    with pytest.raises(RuntimeError, match="parsing failed"):
        coerce_agent_result({"parsed": None, "parsing_error": ValueError("bad json"), "raw": ""})
    with pytest.raises(RuntimeError, match="no parsed payload"):
        coerce_agent_result({"parsed": None, "parsing_error": None, "raw": ""})
    with pytest.raises(RuntimeError, match="parsing failed"):
        coerce_agent_result("not json")
    with pytest.raises(RuntimeError, match="unsupported payload type"):
        coerce_agent_result(42)
    with pytest.raises(RuntimeError, match="failed validation"):
        coerce_agent_result({"total_optimizations": -1})


def test_plan_rejects_counts_that_do_not_match_total() -> None:
    payload = dict(AGENT_PAYLOAD, total_optimizations=7)
    result = AgentResult.model_validate(payload)
    with pytest.raises(ValidationError, match="sum to 3"):
        result.plan()


def test_category_cannot_touch_more_products_than_declared() -> None:
    with pytest.raises(ValidationError):
        OptimizationPlan.model_validate(
            {
                "categories": [
                    {
                        "key": "titles",
                        "count": 1,
                        "changes": [
                            {"product_id": "SKU-1", "attributes": {"title": "A"}},
                            {"product_id": "SKU-2", "attributes": {"title": "B"}},
                        ],
                    }
                ],
                "total_optimizations": 1,
            }
        )


def test_load_agent_result_unwraps_envelope(tmp_path: Path) -> None:
    path = tmp_path / "result.json"
    path.write_text(json.dumps({"status": "success", "result": AGENT_PAYLOAD}), encoding="utf-8")
    assert load_agent_result(path).permission_request.requesting is True
    with pytest.raises(FileNotFoundError):
        load_agent_result(tmp_path / "missing.json")
    garbled = tmp_path / "garbled.json"
    garbled.write_text("{not json", encoding="utf-8")
    with pytest.raises(RuntimeError, match="parsing failed"):
        load_agent_result(garbled)


def test_permission_offer_only_for_truthy_request() -> None:
    granted: list[AutomationMode] = []

    def grant(mode: AutomationMode) -> PermissionState:
        granted.append(mode)
        return PermissionState(granted=True, mode=mode)

    silent = AgentResult.model_validate(dict(AGENT_PAYLOAD, permission_request={"requesting": False}))
    assert permission_offer(silent, grant) is None
    assert permission_offer(AgentResult(), grant) is None

    offer = permission_offer(AgentResult.model_validate(AGENT_PAYLOAD), grant)
    assert offer is not None
    assert offer.scope == ["titles", "feed_errors"]
    assert offer.actions_planned == 3
    assert granted == []
    offer.accept(AutomationMode.AUTO)
    assert granted == [AutomationMode.AUTO]


def test_ingest_enqueues_pending_categories_in_execution_order(control: AutopilotControl) -> None:
    offer = control.ingest(AgentResult.model_validate(AGENT_PAYLOAD))

    items = control.queue_items()
    assert [(i.priority, i.optimization_type) for i in items] == [
        (1, CategoryKey.FEED_ERRORS),
        (2, CategoryKey.TITLES),
    ]
    assert control.plan().total_optimizations == 3
    assert all(c.status == CategoryStatus.PENDING for c in control.plan().categories)
    assert control.permission_state().granted is False

    state = offer.accept(AutomationMode.REVIEW)
    assert (state.granted, state.mode) == (True, AutomationMode.REVIEW)
    assert all(item.requires_approval for item in control.queue_items())


def test_llm_agent_uses_analysis_client(control: AutopilotControl) -> None:
    runnable = _FakeRunnable(AGENT_PAYLOAD)
    agent = LLMAnalysisAgent(
        model_name="gpt-4o-mini",
        client=AnalysisModelClient(runnable=runnable, model_name="gpt-4o-mini"),
    )

    result, offer = control.analyze("trail-shoes.example.com", agent)

    assert "trail-shoes.example.com" in runnable.prompts[0]
    assert result.recommendations[0].title == "Fix missing GTINs"
    assert offer is not None
    assert len(control.queue_items()) == 2

    with pytest.raises(ValueError):
        agent.analyze("   ")
