from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .catalog import FeedCatalog, OptimizationCatalog
from .errors import ExecutionFailure, InvalidModeError, NotGrantedError
from .ledger import ActionLedger
from .models import (
    AutomationMode,
    CategoryKey,
    CategoryStatus,
    Decision,
    LedgerEntry,
    LedgerStatus,
    QueueItem,
    utcnow,
)
from .permissions import PermissionGate
from .queue import OptimizationQueue

logger = logging.getLogger(__name__)


class StepResult(str, Enum):
    IDLE = "idle"
    DENIED = "denied"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    result: StepResult
    priority: int | None = None
    entry: LedgerEntry | None = None


class ExecutionEngine:
    """Single-actor executor for one connected account.

    One item runs at a time: ``step``, ``approve`` and ``reject`` all hold the
    engine lock for their whole duration, which also serializes competing
    approval decisions on the same priority. Failed executions are ledgered
    and never retried; re-submission is up to the operator or the agent.
    """

    def __init__(
        self,
        gate: PermissionGate,
        queue: OptimizationQueue,
        ledger: ActionLedger,
        feed: FeedCatalog,
        *,
        catalog: OptimizationCatalog | None = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self.gate = gate
        self.queue = queue
        self.ledger = ledger
        self.feed = feed
        self.catalog = catalog
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._wake = threading.Event()
        gate.subscribe(lambda _state: self.wake())
        queue.subscribe(self.wake)

    def wake(self) -> None:
        self._wake.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def step(self) -> StepOutcome:
        """Run one scheduling decision for the lowest queued priority."""
        with self._lock:
            item = self.queue.dequeue_next()
            if item is None:
                return StepOutcome(StepResult.IDLE)

            decision = self.gate.authorize(item)
            if decision == Decision.DENY:
                logger.debug("Item %d stays queued: access denied", item.priority)
                return StepOutcome(StepResult.DENIED, priority=item.priority)
            if decision == Decision.REQUIRE_APPROVAL:
                self.queue.hold_for_approval(item.priority)
                logger.info("Item %d (%s) is awaiting approval", item.priority, item.optimization_type.value)
                return StepOutcome(StepResult.AWAITING_APPROVAL, priority=item.priority)

            return _outcome_for(self._execute(self.queue.start(item.priority)))

    def run_until_idle(self) -> list[StepOutcome]:
        """Step until nothing is runnable; idle and denied steps are not returned."""
        outcomes: list[StepOutcome] = []
        while True:
            outcome = self.step()
            if outcome.result in {StepResult.IDLE, StepResult.DENIED}:
                return outcomes
            outcomes.append(outcome)

    def run_forever(self, stop_event: threading.Event) -> None:
        """Drain the queue, then sleep until the gate or queue changes."""
        logger.info("Execution engine started")
        while not stop_event.is_set():
            self._wake.clear()
            self.run_until_idle()
            self._wake.wait(self.poll_interval_seconds)
        logger.info("Execution engine stopped")

    # ------------------------------------------------------------------
    # Approval decisions
    # ------------------------------------------------------------------

    def approve(self, priority: int) -> LedgerEntry:
        """Run an item that is awaiting approval without re-authorizing it.

        The item stays ``awaiting_approval`` when the gate refuses.

        Raises:
            NotGrantedError: If access was revoked while the item waited.
            InvalidModeError: If the account was switched to ``off`` while the item waited.
            AlreadyResolvedError: If the item was already approved or rejected.
        """
        with self._lock:
            state = self.gate.state()
            if not state.granted:
                raise NotGrantedError(f"cannot approve item {priority}: autonomous access is revoked")
            if state.mode == AutomationMode.OFF:
                raise InvalidModeError(f"cannot approve item {priority}: automation mode is off")
            running = self.queue.approve(priority)
            logger.info("Item %d approved", priority)
            return self._execute(running)

    def reject(self, priority: int) -> QueueItem:
        """Drop an item awaiting approval; nothing touched the feed, so nothing is ledgered."""
        with self._lock:
            item = self.queue.reject(priority)
            logger.info("Item %d rejected", priority)
            self._settle_category(item.optimization_type)
        return item

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, item: QueueItem) -> LedgerEntry:
        """Apply a running item and ledger the outcome; the item always leaves the queue."""
        logger.info("Executing item %d (%s, %d product(s))", item.priority, item.optimization_type.value, item.products_affected)
        action_type = item.optimization_type.value
        try:
            self._advance_category(item.optimization_type, CategoryStatus.IN_PROGRESS)
            before, after = self.feed.apply(item.changes)
        except ExecutionFailure as exc:
            logger.warning("Item %d failed: %s", item.priority, exc)
            return self._finish(item, action_type=action_type, status=LedgerStatus.FAILED, error=str(exc))
        except Exception as exc:
            # Unexpected collaborator errors still count as an attempted mutation.
            logger.exception("Item %d crashed during execution", item.priority)
            self._finish(item, action_type=action_type, status=LedgerStatus.FAILED, error=repr(exc))
            raise

        return self._finish(
            item,
            action_type=action_type,
            status=LedgerStatus.COMPLETED,
            before=before,
            after=after,
        )

    def _finish(
        self,
        item: QueueItem,
        *,
        action_type: str,
        status: LedgerStatus,
        before: dict | None = None,
        after: dict | None = None,
        error: str | None = None,
    ) -> LedgerEntry:
        self.queue.finish(item.priority)
        entry = self.ledger.append(
            LedgerEntry(
                timestamp=self._clock(),
                action_type=action_type,
                target=item.target,
                before=before,
                after=after,
                status=status,
                impact_estimate=item.impact_estimate,
                can_rollback=status == LedgerStatus.COMPLETED,
                priority=item.priority,
                error=error,
            )
        )
        self._settle_category(item.optimization_type)
        return entry

    def _advance_category(self, key: CategoryKey, status: CategoryStatus) -> None:
        if self.catalog is not None:
            self.catalog.advance(key, status)

    def _settle_category(self, key: CategoryKey) -> None:
        if self.catalog is None:
            return
        if any(item.optimization_type == key for item in self.queue.items()):
            return
        try:
            current = self.catalog.category(key)
        except KeyError:
            return
        if current.status == CategoryStatus.IN_PROGRESS:
            self.catalog.advance(key, CategoryStatus.COMPLETED)


def _outcome_for(entry: LedgerEntry) -> StepOutcome:
    result = StepResult.COMPLETED if entry.status == LedgerStatus.COMPLETED else StepResult.FAILED
    return StepOutcome(result, priority=entry.priority, entry=entry)
