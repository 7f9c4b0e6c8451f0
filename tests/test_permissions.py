from __future__ import annotations

import itertools

import pytest
from pydantic import ValidationError

from feed_autopilot.errors import InvalidModeError, NotGrantedError
from feed_autopilot.models import AutomationMode, Decision, PermissionState, QueueItemStatus
from feed_autopilot.permissions import PermissionGate
from feed_autopilot.queue import OptimizationQueue

from conftest import TickingClock, make_category


def test_fresh_gate_is_not_granted() -> None:
    state = PermissionGate().state()
    assert state.granted is False
    assert state.mode == AutomationMode.OFF
    assert state.last_sync_time is None
    assert state.pending_approval_count == 0


def test_permission_state_rejects_mode_without_grant() -> None:
    with pytest.raises(ValidationError):
        PermissionState(granted=False, mode=AutomationMode.AUTO)


def test_grant_off_raises_invalid_mode() -> None:
    gate = PermissionGate()
    with pytest.raises(InvalidModeError):
        gate.grant(AutomationMode.OFF)
    assert gate.state().granted is False


def test_set_mode_requires_grant() -> None:
    gate = PermissionGate()
    with pytest.raises(NotGrantedError):
        gate.set_mode(AutomationMode.AUTO)


def test_grant_records_sync_time_and_mode(clock: TickingClock) -> None:
    gate = PermissionGate(clock=clock)
    state = gate.grant(AutomationMode.AUTO)
    assert state.granted is True
    assert state.mode == AutomationMode.AUTO
    assert state.last_sync_time == clock.now


def test_grant_review_twice_is_idempotent_for_queue(clock: TickingClock) -> None:
    queue = OptimizationQueue(clock=clock)
    queue.enqueue([make_category()])
    gate = PermissionGate(queue, clock=clock)

    first = gate.grant(AutomationMode.REVIEW)
    second = gate.grant(AutomationMode.REVIEW)

    assert (second.granted, second.mode) == (first.granted, first.mode) == (True, AutomationMode.REVIEW)
    assert second.last_sync_time > first.last_sync_time
    assert [item.priority for item in queue.items()] == [1]
    assert queue.items()[0].status == QueueItemStatus.QUEUED


def test_revoke_resets_mode_and_keeps_last_sync(clock: TickingClock) -> None:
    gate = PermissionGate(clock=clock)
    granted = gate.grant(AutomationMode.AUTO)
    state = gate.revoke()
    assert state.granted is False
    assert state.mode == AutomationMode.OFF
    assert state.last_sync_time == granted.last_sync_time


def test_mode_implies_granted_for_every_call_sequence() -> None:
    calls = ["grant_review", "grant_auto", "revoke", "mode_off", "mode_auto"]
    for sequence in itertools.product(calls, repeat=4):
        gate = PermissionGate()
        for call in sequence:
            try:
                if call == "grant_review":
                    gate.grant(AutomationMode.REVIEW)
                elif call == "grant_auto":
                    gate.grant(AutomationMode.AUTO)
                elif call == "revoke":
                    gate.revoke()
                elif call == "mode_off":
                    gate.set_mode(AutomationMode.OFF)
                else:
                    gate.set_mode(AutomationMode.AUTO)
            except NotGrantedError:
                pass
            state = gate.state()
            assert state.mode == AutomationMode.OFF or state.granted, sequence


@pytest.mark.parametrize(
    ("initial", "expected"),
    [
        (PermissionState(), Decision.DENY),
        (PermissionState(granted=True, mode=AutomationMode.OFF), Decision.DENY),
        (PermissionState(granted=True, mode=AutomationMode.REVIEW), Decision.REQUIRE_APPROVAL),
        (PermissionState(granted=True, mode=AutomationMode.AUTO), Decision.ALLOW),
    ],
)
def test_authorize_decision_table(initial: PermissionState, expected: Decision) -> None:
    queue = OptimizationQueue()
    (item,) = queue.enqueue([make_category()])
    assert PermissionGate(queue, initial=initial).authorize(item) == expected


def test_mode_changes_refresh_requires_approval() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category()])
    gate = PermissionGate(queue)
    assert queue.get(1).requires_approval is True

    gate.grant(AutomationMode.AUTO)
    assert queue.get(1).requires_approval is False

    gate.set_mode(AutomationMode.REVIEW)
    assert queue.get(1).requires_approval is True
    assert queue.get(1).auto_execute is True


def test_pending_approval_count_is_derived_from_queue() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category(), make_category()])
    gate = PermissionGate(queue)
    queue.hold_for_approval(2)
    assert gate.state().pending_approval_count == 1
    queue.reject(2)
    assert gate.state().pending_approval_count == 0


def test_revoke_pauses_running_items() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category(), make_category()])
    gate = PermissionGate(queue)
    gate.grant(AutomationMode.AUTO)
    queue.start(1)

    gate.revoke()

    assert queue.get(1).status == QueueItemStatus.PAUSED
    assert queue.get(2).status == QueueItemStatus.QUEUED


def test_listeners_receive_each_transition() -> None:
    gate = PermissionGate()
    seen: list[PermissionState] = []
    gate.subscribe(seen.append)
    gate.grant(AutomationMode.REVIEW)
    gate.set_mode(AutomationMode.AUTO)
    gate.revoke()
    assert [state.mode for state in seen] == [AutomationMode.REVIEW, AutomationMode.AUTO, AutomationMode.OFF]


def test_touch_sync_requires_grant(clock: TickingClock) -> None:
    gate = PermissionGate(clock=clock)
    with pytest.raises(NotGrantedError):
        gate.touch_sync()
    granted = gate.grant(AutomationMode.REVIEW)
    assert gate.touch_sync().last_sync_time > granted.last_sync_time
