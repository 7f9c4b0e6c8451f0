from __future__ import annotations

import pytest
from pydantic import ValidationError

from feed_autopilot.errors import (
    AlreadyResolvedError,
    DuplicatePriorityError,
    InvalidTransitionError,
    ItemBusyError,
    UnknownItemError,
)
from feed_autopilot.models import CategoryKey, QueueItemStatus
from feed_autopilot.queue import OptimizationQueue

from conftest import make_category


def test_enqueue_assigns_ascending_priorities_in_insertion_order() -> None:
    queue = OptimizationQueue(minutes_per_product=3)
    items = queue.enqueue(
        [
            make_category(CategoryKey.FEED_ERRORS, {"SKU-1": {"gtin": "0001"}, "SKU-2": {"gtin": "0002"}}),
            make_category(CategoryKey.IMAGES, {"SKU-3": {"image_link": "https://cdn.example.com/sandal.png"}}),
        ]
    )
    assert [item.priority for item in items] == [1, 2]
    assert items[0].optimization_type == CategoryKey.FEED_ERRORS
    assert items[0].products_affected == 2
    assert items[0].estimated_minutes == 6
    assert items[0].target == "feed:feed_errors"
    assert items[1].target == "SKU-3"

    more = queue.enqueue([make_category()])
    assert more[0].priority == 3


def test_enqueue_with_explicit_priorities_numbers_the_rest_above_them() -> None:
    queue = OptimizationQueue()
    items = queue.enqueue([make_category(), make_category(), make_category()], priorities=[10, None, 4])
    assert [item.priority for item in items] == [10, 11, 4]
    assert queue.dequeue_next().priority == 4


def test_duplicate_explicit_priorities_reject_whole_batch() -> None:
    queue = OptimizationQueue()
    with pytest.raises(DuplicatePriorityError):
        queue.enqueue([make_category(), make_category()], priorities=[5, 5])
    assert len(queue) == 0

    queue.enqueue([make_category()], priorities=[2])
    with pytest.raises(DuplicatePriorityError):
        queue.enqueue([make_category(), make_category()], priorities=[7, 2])
    assert [item.priority for item in queue.items()] == [2]


def test_enqueue_rejects_mismatched_or_non_positive_priorities() -> None:
    queue = OptimizationQueue()
    with pytest.raises(ValueError):
        queue.enqueue([make_category()], priorities=[1, 2])
    with pytest.raises(ValueError):
        queue.enqueue([make_category()], priorities=[0])


def test_dequeue_next_skips_paused_and_awaiting_items() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category(), make_category(), make_category()])
    queue.pause(1)
    queue.hold_for_approval(2)
    assert queue.dequeue_next().priority == 3
    # dequeue_next only peeks.
    assert queue.get(3).status == QueueItemStatus.QUEUED


def test_dequeue_next_on_empty_queue() -> None:
    assert OptimizationQueue().dequeue_next() is None


def test_pause_and_resume_keep_original_priority() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category(), make_category()])
    queue.pause(1)
    assert queue.dequeue_next().priority == 2
    resumed = queue.resume(1)
    assert resumed.priority == 1
    assert resumed.status == QueueItemStatus.QUEUED
    assert queue.dequeue_next().priority == 1


def test_running_item_paused_resumes_as_running() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category()])
    queue.start(1)
    queue.pause(1)
    assert queue.resume(1).status == QueueItemStatus.RUNNING


def test_resume_requires_paused_item() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category()])
    with pytest.raises(InvalidTransitionError):
        queue.resume(1)


def test_remove_only_while_queued() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category(), make_category(), make_category()])
    queue.start(1)
    queue.pause(2)

    with pytest.raises(ItemBusyError):
        queue.remove(1)
    queue.pause(1)
    with pytest.raises(ItemBusyError):
        queue.remove(1)
    with pytest.raises(InvalidTransitionError):
        queue.remove(2)

    removed = queue.remove(3)
    assert removed.priority == 3
    assert [item.priority for item in queue.items()] == [1, 2]


def test_unknown_priority_raises_unknown_item() -> None:
    queue = OptimizationQueue()
    with pytest.raises(UnknownItemError):
        queue.get(42)
    with pytest.raises(KeyError):
        queue.pause(42)


def test_priority_is_immutable_on_items() -> None:
    queue = OptimizationQueue()
    (item,) = queue.enqueue([make_category()])
    with pytest.raises(ValidationError):
        item.priority = 9


def test_returned_items_are_detached_copies() -> None:
    queue = OptimizationQueue()
    (item,) = queue.enqueue([make_category()])
    item.status = QueueItemStatus.PAUSED
    assert queue.get(1).status == QueueItemStatus.QUEUED


def test_finished_priority_reports_already_resolved_until_reused() -> None:
    queue = OptimizationQueue()
    queue.enqueue([make_category()])
    queue.start(1)
    queue.finish(1)
    with pytest.raises(AlreadyResolvedError):
        queue.reject(1)

    (item,) = queue.enqueue([make_category()], priorities=[1])
    assert item.status == QueueItemStatus.QUEUED


def test_restore_brings_running_items_back_paused() -> None:
    source = OptimizationQueue()
    source.enqueue([make_category(), make_category()])
    source.start(1)
    snapshot = source.snapshot()

    restored = OptimizationQueue()
    restored.restore(snapshot)
    assert [item.status for item in restored.items()] == [QueueItemStatus.PAUSED, QueueItemStatus.QUEUED]
    assert restored.is_in_flight(1) is False
    assert restored.remove(2).priority == 2


def test_resolved_history_keeps_only_recent_priorities() -> None:
    queue = OptimizationQueue(resolved_history=2)
    queue.enqueue([make_category(), make_category(), make_category()])
    for priority in (1, 2, 3):
        queue.start(priority)
        queue.finish(priority)

    with pytest.raises(UnknownItemError):
        queue.reject(1)
    for priority in (2, 3):
        with pytest.raises(AlreadyResolvedError):
            queue.reject(priority)

    with pytest.raises(ValueError):
        OptimizationQueue(resolved_history=0)
