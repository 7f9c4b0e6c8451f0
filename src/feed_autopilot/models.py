from __future__ import annotations

import hashlib
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .canonical import to_canonical_json


def utcnow() -> datetime:
    return datetime.now(UTC)


class AutomationMode(str, Enum):
    OFF = "off"
    REVIEW = "review"
    AUTO = "auto"


class Decision(str, Enum):
    ALLOW = "allow"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


class CategoryKey(str, Enum):
    TITLES = "titles"
    MISSING_ATTRIBUTES = "missing_attributes"
    IMAGES = "images"
    POLICY = "policy"
    FEED_ERRORS = "feed_errors"


class CategoryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class QueueItemStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"


class LedgerStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"
    REVERTED = "reverted"


CATEGORY_STATUS_TRANSITIONS: dict[CategoryStatus, set[CategoryStatus]] = {
    CategoryStatus.PENDING: {CategoryStatus.IN_PROGRESS, CategoryStatus.COMPLETED},
    CategoryStatus.IN_PROGRESS: {CategoryStatus.COMPLETED},
    # New work enqueued for a finished category reopens it.
    CategoryStatus.COMPLETED: {CategoryStatus.IN_PROGRESS},
}

LEDGER_STATUS_TRANSITIONS: dict[LedgerStatus, set[LedgerStatus]] = {
    LedgerStatus.COMPLETED: {LedgerStatus.REVERTED},
    LedgerStatus.FAILED: set(),
    LedgerStatus.AWAITING_APPROVAL: set(),
    LedgerStatus.REVERTED: set(),
}

# Execution order for a fresh plan: blocking feed problems first, cosmetic work last.
CATEGORY_EXECUTION_ORDER: tuple[CategoryKey, ...] = (
    CategoryKey.FEED_ERRORS,
    CategoryKey.POLICY,
    CategoryKey.MISSING_ATTRIBUTES,
    CategoryKey.TITLES,
    CategoryKey.IMAGES,
)

# product_id -> {field: value}; ``None`` marks a field that is absent.
Snapshot = dict[str, dict[str, Any]]


# ---------------------------------------------------------------------------
# Permission state
# ---------------------------------------------------------------------------

class PermissionState(BaseModel):
    """Immutable snapshot of the permission gate for one connected account."""

    model_config = ConfigDict(frozen=True)

    granted: bool = False
    mode: AutomationMode = AutomationMode.OFF
    last_sync_time: datetime | None = None
    pending_approval_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _mode_requires_grant(self) -> "PermissionState":
        if not self.granted and self.mode != AutomationMode.OFF:
            raise ValueError(f"mode must be 'off' while access is not granted, got {self.mode.value!r}")
        return self


# ---------------------------------------------------------------------------
# Optimization catalog
# ---------------------------------------------------------------------------

class ProposedChange(BaseModel):
    """One product-level edit proposed by the analysis agent."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(min_length=1)
    attributes: dict[str, Any] = Field(min_length=1)
    impact_estimate: str = ""


class OptimizationCategory(BaseModel):
    key: CategoryKey
    count: int = Field(ge=0)
    status: CategoryStatus = CategoryStatus.PENDING
    impact_estimate: str = ""
    auto_execute: bool = True
    changes: list[ProposedChange] = Field(default_factory=list)

    @model_validator(mode="after")
    def _changes_fit_count(self) -> "OptimizationCategory":
        touched = {change.product_id for change in self.changes}
        if len(touched) > self.count:
            raise ValueError(
                f"category {self.key.value} touches {len(touched)} products but declares count={self.count}"
            )
        return self


class OptimizationPlan(BaseModel):
    categories: list[OptimizationCategory] = Field(default_factory=list)
    total_optimizations: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _counts_match_total(self) -> "OptimizationPlan":
        keys = [category.key for category in self.categories]
        if len(keys) != len(set(keys)):
            raise ValueError("optimization plan lists the same category more than once")
        declared = sum(category.count for category in self.categories)
        if declared != self.total_optimizations:
            raise ValueError(
                f"category counts sum to {declared} but total_optimizations is {self.total_optimizations}"
            )
        return self


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class QueueItem(BaseModel):
    """A pending change batch owned by the optimization queue."""

    priority: int = Field(gt=0, frozen=True)
    optimization_type: CategoryKey
    products_affected: int = Field(ge=0)
    estimated_minutes: int = Field(ge=0)
    auto_execute: bool
    requires_approval: bool
    status: QueueItemStatus = QueueItemStatus.QUEUED
    target: str
    changes: list[ProposedChange] = Field(default_factory=list)
    impact_estimate: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def _new_entry_id() -> str:
    return f"LE-{uuid.uuid4().hex[:12]}"


class LedgerEntry(BaseModel):
    """Immutable audit record of one attempted change."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=_new_entry_id)
    sequence: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    action_type: str = Field(min_length=1)
    target: str
    before: Snapshot | None = None
    after: Snapshot | None = None
    status: LedgerStatus
    impact_estimate: str = ""
    can_rollback: bool = False
    reverts: str | None = None
    priority: int | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _reverted_needs_rollback(self) -> "LedgerEntry":
        if self.status == LedgerStatus.REVERTED and not self.can_rollback:
            raise ValueError("only rollback-capable entries can be reverted")
        return self

    @property
    def fingerprint(self) -> str:
        """Digest of the recorded change; stable across the reverted status flip."""
        payload = self.model_dump(mode="json", exclude={"status", "sequence"})
        return hashlib.sha256(to_canonical_json(payload).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Analysis agent payload
# ---------------------------------------------------------------------------

class Analysis(BaseModel):
    data_summary: str = ""
    key_findings: list[str] = Field(default_factory=list)


class Recommendation(BaseModel):
    category: Literal["pricing", "operations", "inventory", "marketing", "gmc"]
    title: str
    description: str = ""
    priority: Literal["high", "medium", "low"] = "medium"
    expected_impact: str = ""


class ActionItem(BaseModel):
    task: str
    timeline: Literal["immediate", "short-term", "long-term"] = "short-term"


class Metrics(BaseModel):
    current_conversion_rate: str = ""
    potential_improvement: str = ""


class PermissionRequest(BaseModel):
    requesting: bool = False
    scope: list[str] = Field(default_factory=list)
    actions_planned: int = Field(default=0, ge=0)
    estimated_improvements: str = ""


class AgentResult(BaseModel):
    """Structured payload returned by the store analysis agent."""

    analysis: Analysis = Field(default_factory=Analysis)
    recommendations: list[Recommendation] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
    optimization_breakdown: list[OptimizationCategory] = Field(default_factory=list)
    total_optimizations: int = Field(default=0, ge=0)
    permission_request: PermissionRequest | None = None

    def plan(self) -> OptimizationPlan:
        return OptimizationPlan(
            categories=[category.model_copy(deep=True) for category in self.optimization_breakdown],
            total_optimizations=self.total_optimizations,
        )
