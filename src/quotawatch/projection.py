from datetime import datetime
from typing import Sequence

from quotawatch.models import (
    ProjectionMetric,
    WeeklyProjection,
    WeeklyProjectionPoint,
    WeeklyUsageRecord,
)

DAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def detect_metric(
    current_week: "Sequence[WeeklyUsageRecord]",
    previous_week: "Sequence[WeeklyUsageRecord]",
) -> "ProjectionMetric":
    """
    picks the single metric driving a projection: percentage
    if any record has one, then tokens, then cost.
    """
    records = [*current_week, *previous_week]
    if any(r.weekly_used_percent is not None for r in records):
        return ProjectionMetric.PERCENTAGE
    if any(r.total_tokens is not None for r in records):
        return ProjectionMetric.TOKENS
    return ProjectionMetric.COST


def record_value(
    record: "WeeklyUsageRecord", metric: "ProjectionMetric"
) -> "float | None":
    if metric == ProjectionMetric.PERCENTAGE:
        return record.weekly_used_percent
    if metric == ProjectionMetric.TOKENS:
        return float(record.total_tokens) if record.total_tokens is not None else None
    return record.cost_usd


def _latest_value(
    records: "Sequence[WeeklyUsageRecord]", metric: "ProjectionMetric"
) -> "float | None":
    for record in sorted(records, key=lambda r: r.day_of_week, reverse=True):
        value = record_value(record, metric)
        if value is not None:
            return value
    return None


def week_total(
    records: "Sequence[WeeklyUsageRecord]", metric: "ProjectionMetric"
) -> "float | None":
    """
    percentages are cumulative, so their total is the latest
    value. Tokens and cost are per-day values and are summed.
    """
    values = [v for v in (record_value(r, metric) for r in records) if v is not None]
    if not values:
        return None
    if metric == ProjectionMetric.PERCENTAGE:
        return _latest_value(records, metric)
    return sum(values)


def compute(
    current_week: "Sequence[WeeklyUsageRecord]",
    previous_week: "Sequence[WeeklyUsageRecord]",
    now: "datetime | None" = None,
) -> "WeeklyProjection":
    """
    builds the Monday..Sunday series for this week against
    last week and extrapolates the remaining days with a
    single average daily rate. Missing inputs produce None
    values, never errors.
    """
    now = now or datetime.now().astimezone()
    today = now.isoweekday()

    metric = detect_metric(current_week, previous_week)
    current_by_day = {r.day_of_week: r for r in current_week}
    previous_by_day = {r.day_of_week: r for r in previous_week}

    current_values = [
        v for v in (record_value(r, metric) for r in current_week) if v is not None
    ]
    latest = _latest_value(current_week, metric)

    rate: "float | None" = None
    if current_values:
        if metric == ProjectionMetric.PERCENTAGE:
            rate = (latest or 0.0) / len(current_values)
        else:
            rate = sum(current_values) / len(current_values)

    points: "list[WeeklyProjectionPoint]" = []
    for day in range(1, 8):
        current = current_by_day.get(day)
        previous = previous_by_day.get(day)

        projected: "float | None" = None
        if day > today and rate is not None:
            if metric == ProjectionMetric.PERCENTAGE:
                projected = (latest or 0.0) + rate * (day - today)
            else:
                projected = rate

        points.append(
            WeeklyProjectionPoint(
                day_of_week=day,
                day_label=DAY_LABELS[day - 1],
                this_week_value=record_value(current, metric) if current else None,
                last_week_value=record_value(previous, metric) if previous else None,
                projected_value=projected,
            )
        )

    this_week_total = week_total(current_week, metric)
    last_week_total = week_total(previous_week, metric)

    projected_end: "float | None" = None
    if this_week_total is not None and rate is not None:
        projected_end = this_week_total + rate * max(0, 7 - today)

    change: "float | None" = None
    if this_week_total is not None and last_week_total is not None and last_week_total > 0:
        change = (this_week_total - last_week_total) / last_week_total * 100

    return WeeklyProjection(
        points=tuple(points),
        metric=metric,
        this_week_total=this_week_total,
        last_week_total=last_week_total,
        projected_end_of_week=projected_end,
        change_percent=change,
    )
