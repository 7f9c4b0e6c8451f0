from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime

from .catalog import FeedCatalog
from .errors import ExecutionFailure, InvalidTransitionError, NotRollbackableError, UnknownItemError
from .models import LEDGER_STATUS_TRANSITIONS, LedgerEntry, LedgerStatus, utcnow

logger = logging.getLogger(__name__)


class LedgerView:
    """Finite, re-iterable, newest-first view over a ledger snapshot.

    Filtering happens while iterating; every ``iter()`` starts over from the
    snapshot taken when the view was created.
    """

    __slots__ = ("_entries", "_status")

    def __init__(self, entries: Sequence[LedgerEntry], status: LedgerStatus | None) -> None:
        self._entries = tuple(sorted(entries, key=lambda e: (e.timestamp, e.sequence), reverse=True))
        self._status = status

    def __iter__(self) -> Iterator[LedgerEntry]:
        for entry in self._entries:
            if self._status is None or entry.status == self._status:
                yield entry

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def first(self) -> LedgerEntry | None:
        return next(iter(self), None)


class ActionLedger:
    """Append-only history of every attempted change against the feed."""

    def __init__(self, entries: Sequence[LedgerEntry] = ()) -> None:
        self._entries: list[LedgerEntry] = []
        self._index: dict[str, int] = {}
        self._lock = threading.Lock()
        for entry in sorted(entries, key=lambda e: e.sequence):
            self._store(entry)

    def _store(self, entry: LedgerEntry) -> None:
        if entry.entry_id in self._index:
            raise InvalidTransitionError(f"ledger already holds entry {entry.entry_id}")
        self._index[entry.entry_id] = len(self._entries)
        self._entries.append(entry)

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            next_sequence = self._entries[-1].sequence + 1 if self._entries else 1
            stored = entry.model_copy(update={"sequence": next_sequence})
            self._store(stored)
        logger.info(
            "Ledger %s: %s on %s -> %s",
            stored.entry_id,
            stored.action_type,
            stored.target,
            stored.status.value,
        )
        return stored

    def get(self, entry_id: str) -> LedgerEntry:
        with self._lock:
            position = self._index.get(entry_id)
            if position is None:
                raise UnknownItemError(f"no ledger entry {entry_id}")
            return self._entries[position]

    def entries(self) -> list[LedgerEntry]:
        """All entries oldest first, by ``(timestamp, sequence)``."""
        with self._lock:
            return sorted(self._entries, key=lambda e: (e.timestamp, e.sequence))

    def query(self, status: LedgerStatus | None = None) -> LedgerView:
        with self._lock:
            snapshot = list(self._entries)
        return LedgerView(snapshot, LedgerStatus(status) if status is not None else None)

    def mark_reverted(self, entry_id: str) -> LedgerEntry:
        """The single in-place change the ledger allows: ``completed -> reverted``."""
        with self._lock:
            position = self._index.get(entry_id)
            if position is None:
                raise UnknownItemError(f"no ledger entry {entry_id}")
            current = self._entries[position]
            if LedgerStatus.REVERTED not in LEDGER_STATUS_TRANSITIONS[current.status] or not current.can_rollback:
                raise NotRollbackableError(
                    f"entry {entry_id} is {current.status.value} (can_rollback={current.can_rollback})"
                )
            updated = current.model_copy(update={"status": LedgerStatus.REVERTED})
            self._entries[position] = updated
        return updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RollbackService:
    """Undo a completed change and record the reversal as a new ledger entry."""

    def __init__(
        self,
        ledger: ActionLedger,
        catalog: FeedCatalog,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.catalog = catalog
        self._clock = clock
        self._lock = threading.Lock()

    def rollback(self, entry: LedgerEntry | str) -> LedgerEntry:
        """Restore ``entry.before`` onto the feed.

        Returns:
            The new corrective entry (``completed``, before/after swapped).

        Raises:
            NotRollbackableError: If the entry is not a completed, rollback-capable change.
            ExecutionFailure: If the feed could not be restored; a ``failed``
                rollback entry is recorded first and the original stays ``completed``.
        """
        entry_id = entry if isinstance(entry, str) else entry.entry_id
        with self._lock:
            # Re-read so a stale copy held by the caller cannot be rolled back twice.
            current = self.ledger.get(entry_id)
            if current.status != LedgerStatus.COMPLETED or not current.can_rollback:
                raise NotRollbackableError(
                    f"entry {entry_id} is {current.status.value} (can_rollback={current.can_rollback})"
                )
            if current.before is None:
                raise NotRollbackableError(f"entry {entry_id} has no before-state to restore")

            action_type = f"rollback:{current.action_type}"
            try:
                self.catalog.restore(current.before)
            except ExecutionFailure as exc:
                logger.error("Rollback of %s failed: %s", entry_id, exc)
                self.ledger.append(
                    LedgerEntry(
                        timestamp=self._clock(),
                        action_type=action_type,
                        target=current.target,
                        before=current.after,
                        after=None,
                        status=LedgerStatus.FAILED,
                        impact_estimate=current.impact_estimate,
                        reverts=entry_id,
                        error=str(exc),
                    )
                )
                raise

            self.ledger.mark_reverted(entry_id)
            corrective = self.ledger.append(
                LedgerEntry(
                    timestamp=self._clock(),
                    action_type=action_type,
                    target=current.target,
                    before=current.after,
                    after=current.before,
                    status=LedgerStatus.COMPLETED,
                    impact_estimate=current.impact_estimate,
                    can_rollback=False,
                    reverts=entry_id,
                    priority=current.priority,
                )
            )
        logger.info("Rolled back %s as %s", entry_id, corrective.entry_id)
        return corrective
