from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from .canonical import snapshots_equal
from .errors import ExecutionFailure, InvalidTransitionError, UnknownItemError
from .models import (
    CATEGORY_EXECUTION_ORDER,
    CATEGORY_STATUS_TRANSITIONS,
    CategoryKey,
    CategoryStatus,
    OptimizationCategory,
    OptimizationPlan,
    ProposedChange,
    Snapshot,
)

logger = logging.getLogger(__name__)


class FeedCatalog(Protocol):
    """The merchant's live product feed, as seen by the execution engine."""

    def apply(self, changes: Iterable[ProposedChange]) -> tuple[Snapshot, Snapshot]:
        """Write ``changes`` and return ``(before, after)`` for the touched fields.

        Raises:
            ExecutionFailure: If the feed could not be written.
        """
        ...

    def restore(self, snapshot: Snapshot) -> None:
        """Put the touched fields back to the values in ``snapshot``.

        Raises:
            ExecutionFailure: If the feed could not be written.
        """
        ...


class InMemoryFeedCatalog:
    """Product feed held in memory; a batch is validated before any write."""

    def __init__(self, products: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._products: dict[str, dict[str, Any]] = {
            product_id: dict(fields) for product_id, fields in (products or {}).items()
        }
        self._lock = threading.Lock()

    def product(self, product_id: str) -> dict[str, Any]:
        with self._lock:
            if product_id not in self._products:
                raise UnknownItemError(f"unknown product {product_id}")
            return copy.deepcopy(self._products[product_id])

    def to_payload(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._products)

    def upsert(self, product_id: str, fields: Mapping[str, Any]) -> None:
        with self._lock:
            self._products.setdefault(product_id, {}).update(copy.deepcopy(dict(fields)))

    def apply(self, changes: Iterable[ProposedChange]) -> tuple[Snapshot, Snapshot]:
        changes = list(changes)
        with self._lock:
            missing = sorted({c.product_id for c in changes if c.product_id not in self._products})
            if missing:
                raise ExecutionFailure(f"feed has no product(s) {', '.join(missing)}")

            before: Snapshot = {}
            for change in changes:
                current = self._products[change.product_id]
                touched = before.setdefault(change.product_id, {})
                for field in change.attributes:
                    touched.setdefault(field, copy.deepcopy(current.get(field)))

            for change in changes:
                _write_fields(self._products[change.product_id], change.attributes)

            after: Snapshot = {
                product_id: {field: copy.deepcopy(self._products[product_id].get(field)) for field in fields}
                for product_id, fields in before.items()
            }
        if snapshots_equal(before, after):
            logger.info("Change batch left %d product(s) unchanged", len(before))
        return before, after

    def restore(self, snapshot: Snapshot) -> None:
        with self._lock:
            missing = sorted(product_id for product_id in snapshot if product_id not in self._products)
            if missing:
                raise ExecutionFailure(f"cannot restore missing product(s) {', '.join(missing)}")
            for product_id, fields in snapshot.items():
                _write_fields(self._products[product_id], fields)


def _write_fields(product: dict[str, Any], fields: Mapping[str, Any]) -> None:
    for field, value in fields.items():
        if value is None:
            product.pop(field, None)
        else:
            product[field] = copy.deepcopy(value)


class OptimizationCatalog:
    """Read-only view of what the analysis agent proposed, plus category progress.

    Category counts never change after ingestion; only the status moves
    forward through ``pending -> in_progress -> completed``.
    """

    def __init__(self, plan: OptimizationPlan | None = None) -> None:
        self._plan = plan.model_copy(deep=True) if plan is not None else OptimizationPlan()
        self._lock = threading.Lock()

    def load(self, plan: OptimizationPlan) -> None:
        """Replace the catalog with a freshly analyzed plan."""
        with self._lock:
            self._plan = plan.model_copy(deep=True)
        logger.info(
            "Loaded optimization plan: %d categories, %d optimization(s)",
            len(plan.categories),
            plan.total_optimizations,
        )

    def plan(self) -> OptimizationPlan:
        with self._lock:
            return self._plan.model_copy(deep=True)

    def category(self, key: CategoryKey) -> OptimizationCategory:
        with self._lock:
            for category in self._plan.categories:
                if category.key == key:
                    return category.model_copy(deep=True)
        raise UnknownItemError(f"plan has no {CategoryKey(key).value} category")

    def batch(self) -> list[OptimizationCategory]:
        """Pending categories with work to do, in execution order."""
        with self._lock:
            pending = [
                category.model_copy(deep=True)
                for category in self._plan.categories
                if category.status == CategoryStatus.PENDING and category.count > 0
            ]
        pending.sort(key=lambda category: CATEGORY_EXECUTION_ORDER.index(category.key))
        return pending

    def advance(self, key: CategoryKey, status: CategoryStatus) -> OptimizationCategory | None:
        """Move a category forward; returns ``None`` when the plan does not list it."""
        with self._lock:
            for category in self._plan.categories:
                if category.key != key:
                    continue
                if category.status == status:
                    return category.model_copy(deep=True)
                if status not in CATEGORY_STATUS_TRANSITIONS[category.status]:
                    raise InvalidTransitionError(
                        f"category {key.value} cannot move {category.status.value} -> {status.value}"
                    )
                category.status = status
                logger.info("Category %s is now %s", key.value, status.value)
                return category.model_copy(deep=True)
        return None
