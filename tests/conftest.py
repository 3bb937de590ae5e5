# pylint: disable=redefined-outer-name
"""
Shared fixtures for the feed digest tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from feed_digest.core.types import Record

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class TickingClock:
    """Clock returning ``start`` and advancing one millisecond per call."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(milliseconds=1)
        return value


class RecordingSleep:
    """Async sleep replacement that records the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# --- Fixtures ---


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_record() -> Callable[..., Record]:
    """Build records with sensible defaults."""

    def _make(title: str = "Article", link: str = "", **overrides: Any) -> Record:
        data: dict[str, Any] = {
            "title": title,
            "link": link or f"https://example.com/{title.lower().replace(' ', '-')}",
            "description": "",
            "published_at": NOW - timedelta(hours=1),
        }
        data.update(overrides)
        return Record(**data)

    return _make
