from datetime import datetime, timezone
from typing import Callable

import pytest
from prometheus_client import CollectorRegistry

from quotawatch.models import WeeklyUsageRecord


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


def _make_record(
    day_of_week: "int",
    week_number: "int" = 10,
    week_year: "int" = 2026,
    provider: "str" = "claude",
    day_key: "str | None" = None,
    **values: "object",
) -> "WeeklyUsageRecord":
    """
    builds a record for tests; day_key defaults to a key unique
    per (year, week, day).
    """
    return WeeklyUsageRecord(
        day_key=day_key or f"{week_year}-W{week_number:02d}-{day_of_week}",
        provider=provider,
        week_number=week_number,
        week_year=week_year,
        day_of_week=day_of_week,
        recorded_at=datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc),
        **values,
    )


@pytest.fixture()
def make_record() -> "Callable[..., WeeklyUsageRecord]":
    return _make_record

