from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from .errors import InvalidModeError, NotGrantedError
from .models import AutomationMode, Decision, PermissionState, QueueItem, utcnow
from .queue import OptimizationQueue

logger = logging.getLogger(__name__)

PermissionListener = Callable[[PermissionState], None]


class PermissionGate:
    """Owner of the account's autonomous-access state.

    The state is held as a single validated ``PermissionState`` value and
    replaced wholesale on every transition, so ``mode != off`` without a grant
    can never be observed. ``authorize`` is the only decision point the
    execution engine consults before mutating the feed.
    """

    def __init__(
        self,
        queue: OptimizationQueue | None = None,
        *,
        initial: PermissionState | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._queue = queue
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: list[PermissionListener] = []
        base = initial if initial is not None else PermissionState()
        self._state = base.model_copy(update={"pending_approval_count": 0})
        if self._queue is not None:
            self._queue.apply_policy(self._state.mode)

    def subscribe(self, listener: PermissionListener) -> None:
        self._listeners.append(listener)

    def state(self) -> PermissionState:
        """Return the current state with the derived pending-approval count."""
        with self._lock:
            pending = self._queue.count_awaiting() if self._queue is not None else 0
            return self._state.model_copy(update={"pending_approval_count": pending})

    def grant(self, mode: AutomationMode) -> PermissionState:
        mode = AutomationMode(mode)
        if mode == AutomationMode.OFF:
            raise InvalidModeError("grant requires 'review' or 'auto'; use revoke() to switch automation off")
        with self._lock:
            previous = self._state
            self._state = PermissionState(granted=True, mode=mode, last_sync_time=self._clock())
            self._refresh_policy()
        if previous.granted and previous.mode == mode:
            logger.debug("Autonomous access re-granted in %s mode", mode.value)
        else:
            logger.info("Autonomous access granted in %s mode", mode.value)
        return self._publish()

    def revoke(self) -> PermissionState:
        with self._lock:
            self._state = PermissionState(granted=False, mode=AutomationMode.OFF, last_sync_time=self._state.last_sync_time)
            self._refresh_policy()
            if self._queue is not None:
                self._queue.pause_running()
        logger.info("Autonomous access revoked")
        return self._publish()

    def set_mode(self, mode: AutomationMode) -> PermissionState:
        mode = AutomationMode(mode)
        with self._lock:
            if not self._state.granted:
                raise NotGrantedError(f"cannot switch to {mode.value} mode before access is granted")
            self._state = self._state.model_copy(update={"mode": mode})
            self._refresh_policy()
        logger.info("Automation mode set to %s", mode.value)
        return self._publish()

    def touch_sync(self) -> PermissionState:
        """Record a completed feed sync for a granted account."""
        with self._lock:
            if not self._state.granted:
                raise NotGrantedError("feed sync requires granted access")
            self._state = self._state.model_copy(update={"last_sync_time": self._clock()})
        return self._publish()

    def authorize(self, item: QueueItem) -> Decision:
        """Decide whether ``item`` may mutate the feed under the current state."""
        with self._lock:
            state = self._state
        if not state.granted or state.mode == AutomationMode.OFF:
            decision = Decision.DENY
        elif state.mode == AutomationMode.REVIEW:
            decision = Decision.REQUIRE_APPROVAL
        else:
            decision = Decision.ALLOW
        logger.debug("authorize(priority=%d, type=%s) -> %s", item.priority, item.optimization_type.value, decision.value)
        return decision

    def _refresh_policy(self) -> None:
        if self._queue is not None:
            self._queue.apply_policy(self._state.mode)

    def _publish(self) -> PermissionState:
        state = self.state()
        for listener in list(self._listeners):
            listener(state)
        return state
