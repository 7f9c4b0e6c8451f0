from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Sequence
from datetime import datetime

from .errors import (
    AlreadyResolvedError,
    DuplicatePriorityError,
    InvalidTransitionError,
    ItemBusyError,
    UnknownItemError,
)
from .models import (
    AutomationMode,
    OptimizationCategory,
    QueueItem,
    QueueItemStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

RESOLVED_HISTORY_LIMIT = 1024


def requires_approval_for(mode: AutomationMode) -> bool:
    """Effective approval policy: only ``auto`` mode runs items unattended."""
    return mode != AutomationMode.AUTO


class OptimizationQueue:
    """Ordered backlog of change batches keyed by a unique, immutable priority.

    The queue is the single writer for item status. Callers receive deep
    copies, so a stray assignment on a returned item never leaks back in.
    """

    def __init__(
        self,
        *,
        minutes_per_product: int = 1,
        clock: Callable[[], datetime] = utcnow,
        resolved_history: int = RESOLVED_HISTORY_LIMIT,
    ) -> None:
        if minutes_per_product < 0:
            raise ValueError("minutes_per_product must be >= 0")
        if resolved_history < 1:
            raise ValueError("resolved_history must be >= 1")
        self._items: dict[int, QueueItem] = {}
        self._in_flight: set[int] = set()
        # Most recently resolved priorities, oldest first; bounded by resolved_history.
        self._resolved: OrderedDict[int, None] = OrderedDict()
        self._resolved_history = resolved_history
        self._mode = AutomationMode.OFF
        self._minutes_per_product = minutes_per_product
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def items(self) -> list[QueueItem]:
        with self._lock:
            return [self._items[p].model_copy(deep=True) for p in sorted(self._items)]

    def get(self, priority: int) -> QueueItem:
        with self._lock:
            return self._require(priority).model_copy(deep=True)

    def count_awaiting(self) -> int:
        with self._lock:
            return sum(1 for item in self._items.values() if item.status == QueueItemStatus.AWAITING_APPROVAL)

    def is_in_flight(self, priority: int) -> bool:
        with self._lock:
            return priority in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _require(self, priority: int) -> QueueItem:
        item = self._items.get(priority)
        if item is not None:
            return item
        if priority in self._resolved:
            raise AlreadyResolvedError(f"queue item {priority} was already resolved")
        raise UnknownItemError(f"no active queue item with priority {priority}")

    def _mark_resolved(self, priority: int) -> None:
        self._resolved.pop(priority, None)
        self._resolved[priority] = None
        while len(self._resolved) > self._resolved_history:
            self._resolved.popitem(last=False)

    # ------------------------------------------------------------------
    # Enqueue / dequeue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        batch: Sequence[OptimizationCategory],
        *,
        priorities: Sequence[int | None] | None = None,
    ) -> list[QueueItem]:
        """Create one queue item per category.

        Explicit priorities must be positive and unique against each other and
        the active queue; the whole batch is rejected otherwise. Items without
        an explicit priority are numbered in insertion order above every
        priority already in use.

        Raises:
            DuplicatePriorityError: If explicit priorities collide.
            ValueError: If ``priorities`` does not match the batch length or is not positive.
        """
        if priorities is not None and len(priorities) != len(batch):
            raise ValueError(f"priorities has {len(priorities)} entries for a batch of {len(batch)}")
        requested = list(priorities) if priorities is not None else [None] * len(batch)

        with self._lock:
            explicit = [p for p in requested if p is not None]
            for priority in explicit:
                if priority <= 0:
                    raise ValueError(f"priority must be positive, got {priority}")
            seen: set[int] = set()
            for priority in explicit:
                if priority in seen or priority in self._items:
                    raise DuplicatePriorityError(f"priority {priority} is already taken")
                seen.add(priority)

            next_priority = max([*self._items, *explicit, 0]) + 1
            created: list[QueueItem] = []
            for category, priority in zip(batch, requested):
                if priority is None:
                    priority = next_priority
                    next_priority += 1
                item = QueueItem(
                    priority=priority,
                    optimization_type=category.key,
                    products_affected=category.count,
                    estimated_minutes=category.count * self._minutes_per_product,
                    auto_execute=category.auto_execute,
                    requires_approval=requires_approval_for(self._mode),
                    target=_target_for(category),
                    changes=list(category.changes),
                    impact_estimate=category.impact_estimate,
                    created_at=self._clock(),
                )
                self._items[priority] = item
                self._resolved.pop(priority, None)
                created.append(item.model_copy(deep=True))
        if created:
            logger.info("Enqueued %d item(s) at priorities %s", len(created), [i.priority for i in created])
            self._notify()
        return created

    def dequeue_next(self) -> QueueItem | None:
        """Return the lowest-priority queued item without changing its status."""
        with self._lock:
            queued = [p for p, item in self._items.items() if item.status == QueueItemStatus.QUEUED]
            if not queued:
                return None
            return self._items[min(queued)].model_copy(deep=True)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def start(self, priority: int) -> QueueItem:
        """queued -> running; the item is in flight until :meth:`finish`."""
        with self._lock:
            item = self._require(priority)
            if item.status != QueueItemStatus.QUEUED:
                raise InvalidTransitionError(f"cannot start item {priority} from {item.status.value}")
            item.status = QueueItemStatus.RUNNING
            self._in_flight.add(priority)
            return item.model_copy(deep=True)

    def approve(self, priority: int) -> QueueItem:
        """awaiting_approval -> running, skipping a second authorization."""
        with self._lock:
            item = self._require(priority)
            if priority in self._in_flight:
                raise AlreadyResolvedError(f"item {priority} was already approved")
            _ensure_awaiting(item)
            item.status = QueueItemStatus.RUNNING
            self._in_flight.add(priority)
            return item.model_copy(deep=True)

    def hold_for_approval(self, priority: int) -> QueueItem:
        with self._lock:
            item = self._require(priority)
            if item.status != QueueItemStatus.QUEUED:
                raise InvalidTransitionError(f"cannot hold item {priority} from {item.status.value}")
            item.status = QueueItemStatus.AWAITING_APPROVAL
            item.requires_approval = True
            return item.model_copy(deep=True)

    def finish(self, priority: int) -> QueueItem:
        """Remove an in-flight item once its execution reached a terminal outcome.

        A running item paused mid-execution still finishes here.
        """
        with self._lock:
            if priority not in self._in_flight:
                raise InvalidTransitionError(f"item {priority} is not executing")
            item = self._items.pop(priority)
            self._in_flight.discard(priority)
            self._mark_resolved(priority)
        self._notify()
        return item

    def reject(self, priority: int) -> QueueItem:
        """Drop an item awaiting approval without running it."""
        with self._lock:
            item = self._require(priority)
            if priority in self._in_flight:
                raise AlreadyResolvedError(f"item {priority} was already approved")
            _ensure_awaiting(item)
            del self._items[priority]
            self._mark_resolved(priority)
        self._notify()
        return item

    def pause(self, priority: int) -> QueueItem:
        with self._lock:
            item = self._require(priority)
            if item.status not in {QueueItemStatus.QUEUED, QueueItemStatus.RUNNING}:
                raise InvalidTransitionError(f"cannot pause item {priority} from {item.status.value}")
            item.status = QueueItemStatus.PAUSED
            return item.model_copy(deep=True)

    def resume(self, priority: int) -> QueueItem:
        with self._lock:
            item = self._require(priority)
            if item.status != QueueItemStatus.PAUSED:
                raise InvalidTransitionError(f"cannot resume item {priority} from {item.status.value}")
            in_flight = priority in self._in_flight
            item.status = QueueItemStatus.RUNNING if in_flight else QueueItemStatus.QUEUED
            resumed = item.model_copy(deep=True)
        if not in_flight:
            self._notify()
        return resumed

    def pause_running(self) -> list[int]:
        """Pause every running item; used when access is revoked."""
        with self._lock:
            paused = [
                p for p, item in self._items.items() if item.status == QueueItemStatus.RUNNING
            ]
            for priority in paused:
                self._items[priority].status = QueueItemStatus.PAUSED
        if paused:
            logger.warning("Paused running item(s) %s after access was revoked", paused)
        return paused

    def remove(self, priority: int) -> QueueItem:
        with self._lock:
            item = self._require(priority)
            if priority in self._in_flight:
                raise ItemBusyError(f"item {priority} is executing and cannot be removed")
            if item.status != QueueItemStatus.QUEUED:
                raise InvalidTransitionError(f"only queued items can be removed; item {priority} is {item.status.value}")
            del self._items[priority]
        self._notify()
        return item

    def apply_policy(self, mode: AutomationMode) -> None:
        """Refresh the effective ``requires_approval`` flag after a mode change."""
        with self._lock:
            self._mode = mode
            required = requires_approval_for(mode)
            for item in self._items.values():
                if item.status != QueueItemStatus.AWAITING_APPROVAL:
                    item.requires_approval = required

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> list[QueueItem]:
        return self.items()

    def restore(self, items: Sequence[QueueItem]) -> None:
        """Replace the queue contents from persisted items.

        Items persisted while running were interrupted mid-execution; they
        come back paused so an operator decides whether to resume them.
        """
        with self._lock:
            if self._in_flight:
                raise ItemBusyError("cannot restore while an item is executing")
            restored: dict[int, QueueItem] = {}
            for item in items:
                if item.priority in restored:
                    raise DuplicatePriorityError(f"persisted queue repeats priority {item.priority}")
                copy = item.model_copy(deep=True)
                if copy.status == QueueItemStatus.RUNNING:
                    logger.warning("Queue item %d was running when state was saved; restoring as paused", copy.priority)
                    copy.status = QueueItemStatus.PAUSED
                restored[copy.priority] = copy
            self._items = restored
            self._resolved.clear()


def _ensure_awaiting(item: QueueItem) -> None:
    if item.status == QueueItemStatus.AWAITING_APPROVAL:
        return
    if item.status == QueueItemStatus.RUNNING:
        raise AlreadyResolvedError(f"item {item.priority} was already approved")
    raise InvalidTransitionError(f"item {item.priority} is {item.status.value}, not awaiting approval")


def _target_for(category: OptimizationCategory) -> str:
    products = sorted({change.product_id for change in category.changes})
    if len(products) == 1:
        return products[0]
    return f"feed:{category.key.value}"
