from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from pydantic import TypeAdapter, ValidationError

from .canonical import to_canonical_json
from .models import LedgerEntry, OptimizationPlan, PermissionState, QueueItem, utcnow

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_QUEUE_ADAPTER = TypeAdapter(list[QueueItem])
_LEDGER_ADAPTER = TypeAdapter(list[LedgerEntry])


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar next to *path*.

    The sidecar lets the data file itself be replaced with ``os.replace``
    while the lock handle stays valid.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* via a temp file in the same directory, then rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if it is missing, empty or not UTF-8."""
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def sanitize_account_id(account_id: str) -> str:
    """Make an account ID safe to use as a single path component.

    Raises:
        ValueError: If the ID is empty or has no filesystem-safe characters.
    """
    value = account_id.strip()
    if not value:
        raise ValueError("account_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.")
    if not value:
        raise ValueError("account_id contains no filesystem-safe characters")
    return value[:128]


class AutopilotStateStore:
    """Per-account filesystem store for gate, queue, plan, ledger and feed state.

    Every write is atomic and guarded by an exclusive file lock, so a CLI
    invocation and a long-running engine sharing the directory do not tear
    each other's files. ``events.jsonl`` is an append-only audit log.
    """

    def __init__(self, root: Path, *, account_id: str = "default") -> None:
        self.account_id = sanitize_account_id(account_id)
        self.root = root / "accounts" / self.account_id
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def permission_path(self) -> Path:
        return self.root / "permission.json"

    @property
    def queue_path(self) -> Path:
        return self.root / "queue.json"

    @property
    def plan_path(self) -> Path:
        return self.root / "plan.json"

    @property
    def ledger_path(self) -> Path:
        return self.root / "ledger.json"

    @property
    def feed_path(self) -> Path:
        return self.root / "feed.json"

    @property
    def events_path(self) -> Path:
        return self.root / "events.jsonl"

    # ------------------------------------------------------------------
    # Permission state
    # ------------------------------------------------------------------

    def write_permission_state(self, state: PermissionState) -> None:
        with _locked_file(self.permission_path):
            _atomic_write_text(self.permission_path, state.model_dump_json(indent=2))

    def read_permission_state(self) -> PermissionState:
        """Return the persisted state, or a fresh not-granted state if none exists."""
        if not self.permission_path.is_file():
            return PermissionState()
        with _locked_file(self.permission_path):
            text = _safe_read_json(self.permission_path, "permission state")
            try:
                return PermissionState.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"permission state at {self.permission_path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def write_queue(self, items: list[QueueItem]) -> None:
        with _locked_file(self.queue_path):
            _atomic_write_text(self.queue_path, _QUEUE_ADAPTER.dump_json(items, indent=2).decode("utf-8"))

    def read_queue(self) -> list[QueueItem]:
        if not self.queue_path.is_file():
            return []
        with _locked_file(self.queue_path):
            text = _safe_read_json(self.queue_path, "optimization queue")
            try:
                return _QUEUE_ADAPTER.validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"optimization queue at {self.queue_path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def write_plan(self, plan: OptimizationPlan) -> None:
        with _locked_file(self.plan_path):
            _atomic_write_text(self.plan_path, plan.model_dump_json(indent=2))

    def read_plan(self) -> OptimizationPlan | None:
        if not self.plan_path.is_file():
            return None
        with _locked_file(self.plan_path):
            text = _safe_read_json(self.plan_path, "optimization plan")
            try:
                return OptimizationPlan.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"optimization plan at {self.plan_path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def write_ledger(self, entries: list[LedgerEntry]) -> None:
        with _locked_file(self.ledger_path):
            _atomic_write_text(self.ledger_path, _LEDGER_ADAPTER.dump_json(entries, indent=2).decode("utf-8"))

    def read_ledger(self) -> list[LedgerEntry]:
        if not self.ledger_path.is_file():
            return []
        with _locked_file(self.ledger_path):
            text = _safe_read_json(self.ledger_path, "action ledger")
            try:
                return _LEDGER_ADAPTER.validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"action ledger at {self.ledger_path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Feed
    # ------------------------------------------------------------------

    def write_feed(self, products: dict[str, dict[str, Any]]) -> None:
        with _locked_file(self.feed_path):
            _atomic_write_text(self.feed_path, json.dumps(products, indent=2, sort_keys=True, default=str))

    def read_feed(self) -> dict[str, dict[str, Any]]:
        if not self.feed_path.is_file():
            return {}
        with _locked_file(self.feed_path):
            payload = json.loads(_safe_read_json(self.feed_path, "product feed"))
        if not isinstance(payload, dict) or not all(isinstance(v, dict) for v in payload.values()):
            raise ValueError(f"product feed at {self.feed_path} must map product ids to attribute objects")
        return payload

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def log_event(self, event: str, **fields: Any) -> None:
        record = {"event": event, "at": utcnow(), **fields}
        with _locked_file(self.events_path):
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(to_canonical_json(record) + "\n")
        logger.debug("Logged %s event for account %s", event, self.account_id)

    def read_events(self) -> list[dict[str, Any]]:
        if not self.events_path.is_file():
            return []
        with _locked_file(self.events_path):
            lines = self.events_path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]
