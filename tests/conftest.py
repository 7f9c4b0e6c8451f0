from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from feed_autopilot.catalog import InMemoryFeedCatalog
from feed_autopilot.control import AutopilotControl
from feed_autopilot.models import CategoryKey, OptimizationCategory, ProposedChange


class TickingClock:
    """Deterministic clock that advances one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def make_category(
    key: CategoryKey = CategoryKey.TITLES,
    changes: dict[str, dict[str, object]] | None = None,
    *,
    count: int | None = None,
) -> OptimizationCategory:
    if changes is None:
        changes = {"SKU-1": {"title": "Trail Runner 2 - Waterproof Men's Running Shoe"}}
    proposed = [ProposedChange(product_id=pid, attributes=attrs, impact_estimate="+4% CTR") for pid, attrs in changes.items()]
    return OptimizationCategory(
        key=key,
        count=len(proposed) if count is None else count,
        impact_estimate="+4% CTR",
        changes=proposed,
    )


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def feed() -> InMemoryFeedCatalog:
    return InMemoryFeedCatalog(
        {
            "SKU-1": {"title": "Trail Runner 2", "color": "red", "price": "89.00"},
            "SKU-2": {"title": "Road Racer", "price": "120.00"},
            "SKU-3": {"title": "Camp Sandal", "image_link": "http://cdn.example.com/sandal.jpg"},
        }
    )


@pytest.fixture
def control(feed: InMemoryFeedCatalog, clock: TickingClock) -> AutopilotControl:
    return AutopilotControl(feed, clock=clock)
