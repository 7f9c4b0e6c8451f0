from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from .analysis import AnalysisAgent, PermissionOffer, permission_offer
from .catalog import FeedCatalog, InMemoryFeedCatalog, OptimizationCatalog
from .engine import ExecutionEngine, StepOutcome
from .ledger import ActionLedger, LedgerView, RollbackService
from .models import (
    AgentResult,
    AutomationMode,
    LedgerEntry,
    LedgerStatus,
    OptimizationPlan,
    PermissionState,
    QueueItem,
    utcnow,
)
from .permissions import PermissionGate
from .queue import OptimizationQueue
from .settings import AutopilotSettings
from .state_store import AutopilotStateStore

logger = logging.getLogger(__name__)


class AutopilotControl:
    """The library boundary consumed by the dashboard shell.

    Wires one gate, queue, ledger, engine and rollback service per connected
    account. When a state store is attached, every mutating call is logged to
    the event log and the full state is saved before returning.
    """

    def __init__(
        self,
        feed: FeedCatalog,
        *,
        settings: AutopilotSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        permission: PermissionState | None = None,
        queue_items: Sequence[QueueItem] = (),
        ledger_entries: Sequence[LedgerEntry] = (),
        plan: OptimizationPlan | None = None,
        store: AutopilotStateStore | None = None,
    ) -> None:
        self.settings = settings if settings is not None else AutopilotSettings()
        self.feed = feed
        self.store = store
        self.queue = OptimizationQueue(minutes_per_product=self.settings.minutes_per_product, clock=clock)
        if queue_items:
            self.queue.restore(queue_items)
        self.gate = PermissionGate(self.queue, initial=permission, clock=clock)
        self.ledger = ActionLedger(ledger_entries)
        self.catalog = OptimizationCatalog(plan)
        self.engine = ExecutionEngine(
            self.gate,
            self.queue,
            self.ledger,
            feed,
            catalog=self.catalog,
            clock=clock,
            poll_interval_seconds=self.settings.poll_interval_seconds,
        )
        self.rollbacks = RollbackService(self.ledger, feed, clock=clock)

    @classmethod
    def open(
        cls,
        store: AutopilotStateStore,
        *,
        settings: AutopilotSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AutopilotControl":
        """Rebuild the control system from a state store, feed included."""
        logger.info("Opening autopilot state for account %s at %s", store.account_id, store.root)
        return cls(
            InMemoryFeedCatalog(store.read_feed()),
            settings=settings,
            clock=clock,
            permission=store.read_permission_state(),
            queue_items=store.read_queue(),
            ledger_entries=store.read_ledger(),
            plan=store.read_plan(),
            store=store,
        )

    def save(self) -> None:
        if self.store is None:
            raise RuntimeError("no state store attached")
        self.store.write_permission_state(self.gate.state())
        self.store.write_queue(self.queue.snapshot())
        self.store.write_plan(self.catalog.plan())
        self.store.write_ledger(self.ledger.entries())
        if isinstance(self.feed, InMemoryFeedCatalog):
            self.store.write_feed(self.feed.to_payload())

    def _commit(self, event: str, **fields: Any) -> None:
        if self.store is None:
            return
        self.store.log_event(event, **fields)
        self.save()

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def permission_state(self) -> PermissionState:
        return self.gate.state()

    def queue_items(self) -> list[QueueItem]:
        return self.queue.items()

    def ledger_entries(self, status: LedgerStatus | None = None) -> LedgerView:
        return self.ledger.query(status)

    def plan(self) -> OptimizationPlan:
        return self.catalog.plan()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def ingest(self, result: AgentResult) -> PermissionOffer | None:
        """Load the agent's optimization plan and enqueue its pending categories.

        Returns:
            A permission offer when the agent asked for automation, else ``None``.
        """
        self.catalog.load(result.plan())
        items = self.queue.enqueue(self.catalog.batch())
        self._commit("ingest", priorities=[item.priority for item in items], total=result.total_optimizations)
        return permission_offer(result, self.grant)

    def analyze(self, store_identifier: str, agent: AnalysisAgent) -> tuple[AgentResult, PermissionOffer | None]:
        result = agent.analyze(store_identifier)
        return result, self.ingest(result)

    # ------------------------------------------------------------------
    # Permission entry points
    # ------------------------------------------------------------------

    def grant(self, mode: AutomationMode) -> PermissionState:
        state = self.gate.grant(mode)
        self._commit("grant", mode=state.mode)
        return state

    def revoke(self) -> PermissionState:
        state = self.gate.revoke()
        self._commit("revoke")
        return state

    def set_mode(self, mode: AutomationMode) -> PermissionState:
        state = self.gate.set_mode(mode)
        self._commit("set_mode", mode=state.mode)
        return state

    # ------------------------------------------------------------------
    # Queue and execution entry points
    # ------------------------------------------------------------------

    def run_pending(self) -> list[StepOutcome]:
        outcomes = self.engine.run_until_idle()
        self._commit("run", outcomes=[(o.priority, o.result) for o in outcomes])
        return outcomes

    def approve(self, priority: int) -> LedgerEntry:
        entry = self.engine.approve(priority)
        self._commit("approve", priority=priority, entry_id=entry.entry_id, status=entry.status)
        return entry

    def reject(self, priority: int) -> QueueItem:
        item = self.engine.reject(priority)
        self._commit("reject", priority=priority)
        return item

    def pause(self, priority: int) -> QueueItem:
        item = self.queue.pause(priority)
        self._commit("pause", priority=priority)
        return item

    def resume(self, priority: int) -> QueueItem:
        item = self.queue.resume(priority)
        self._commit("resume", priority=priority)
        return item

    def remove(self, priority: int) -> QueueItem:
        item = self.queue.remove(priority)
        self._commit("remove", priority=priority)
        return item

    def rollback(self, entry: LedgerEntry | str) -> LedgerEntry:
        entry_id = entry if isinstance(entry, str) else entry.entry_id
        try:
            corrective = self.rollbacks.rollback(entry_id)
        except Exception:
            # A failed restore still appended a ledger entry worth keeping.
            if self.store is not None:
                self.save()
            raise
        self._commit("rollback", entry_id=entry_id, corrective_id=corrective.entry_id)
        return corrective
