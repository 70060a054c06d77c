from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


@dataclass(frozen=True, slots=True)
class RateWindow:
    """
    RateWindow represents a single quota window (e.g. the
    5-hour session or the 7-day weekly limit) reported by
    a provider.
    """

    # clamped into [0, 100] on construction
    used_percent: "float"
    window_minutes: "int | None" = None
    resets_at: "datetime | None" = None
    reset_description: "str | None" = None

    def __post_init__(self) -> "None":
        clamped = min(100.0, max(0.0, float(self.used_percent)))
        object.__setattr__(self, "used_percent", clamped)


@dataclass(frozen=True, slots=True)
class ProviderCostSnapshot:
    """
    ProviderCostSnapshot represents the pay-as-you-go spend
    of an account within its billing period.
    """

    used: "float"
    limit: "float"
    currency_code: "str"
    period: "str"
    resets_at: "datetime | None" = None
    updated_at: "datetime | None" = None


@dataclass(frozen=True, slots=True)
class ProviderIdentitySnapshot:
    provider: "str"
    account_email: "str | None" = None
    account_organization: "str | None" = None
    login_method: "str | None" = None


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot is the canonical, provider-agnostic result
    of one successful fetch. A snapshot always carries the
    primary window.
    """

    primary: "RateWindow"
    updated_at: "datetime"
    secondary: "RateWindow | None" = None
    # model-specific window (e.g. Sonnet-only weekly)
    tertiary: "RateWindow | None" = None
    provider_cost: "ProviderCostSnapshot | None" = None
    identity: "ProviderIdentitySnapshot | None" = None


@dataclass(frozen=True, slots=True)
class FetchResult:
    usage: "UsageSnapshot"
    source_label: "str"
    strategy_id: "str"
    strategy_kind: "str"


@dataclass(frozen=True, slots=True)
class TokenUsageDay:
    """
    TokenUsageDay aggregates the locally logged tokens of a
    single calendar day.
    """

    # local calendar day, "YYYY-MM-DD"
    date: "str"
    input_tokens: "int"
    output_tokens: "int"
    cache_read_tokens: "int" = 0
    cache_creation_tokens: "int" = 0
    cost_usd: "float | None" = None

    @property
    def total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )


@dataclass(frozen=True, slots=True)
class TokenUsageSnapshot:
    daily: "tuple[TokenUsageDay, ...]"
    updated_at: "datetime"

    def day(self, day_key: "str") -> "TokenUsageDay | None":
        for entry in self.daily:
            if entry.date == day_key:
                return entry
        return None


@dataclass(frozen=True, slots=True)
class WeeklyUsageRecord:
    """
    WeeklyUsageRecord is one calendar day of combined
    percentage and token data for a provider. Records are
    unique by (provider, day_key).
    """

    # "2026-02-11"
    day_key: "str"
    provider: "str"
    # ISO 8601 week-of-year and week-numbering year
    week_number: "int"
    week_year: "int"
    # 1=Mon ... 7=Sun
    day_of_week: "int"
    recorded_at: "datetime"

    # from the provider's rate windows
    weekly_used_percent: "float | None" = None
    session_used_percent: "float | None" = None
    weekly_resets_at: "datetime | None" = None

    # from local token logs
    total_tokens: "int | None" = None
    input_tokens: "int | None" = None
    output_tokens: "int | None" = None
    cost_usd: "float | None" = None


@dataclass(slots=True)
class WeeklyUsageReport:
    """
    WeeklyUsageReport holds the records of one provider in
    insertion order.
    """

    records: "list[WeeklyUsageRecord]" = field(default_factory=list)

    def upsert(self, record: "WeeklyUsageRecord") -> "None":
        """
        replaces the record with the same day key, or appends
        it when the day is new.
        """
        for index, existing in enumerate(self.records):
            if existing.day_key == record.day_key:
                self.records[index] = record
                return
        self.records.append(record)

    def week(self, year: "int", number: "int") -> "list[WeeklyUsageRecord]":
        matching = [
            r for r in self.records if r.week_year == year and r.week_number == number
        ]
        return sorted(matching, key=lambda r: r.day_of_week)

    def current_week(self, now: "datetime") -> "list[WeeklyUsageRecord]":
        year, week, _ = now.isocalendar()
        return self.week(year, week)

    def previous_week(self, now: "datetime") -> "list[WeeklyUsageRecord]":
        year, week, _ = (now - timedelta(weeks=1)).isocalendar()
        return self.week(year, week)


class ProjectionMetric(str, Enum):
    PERCENTAGE = "percentage"
    TOKENS = "tokens"
    COST = "cost"


@dataclass(frozen=True, slots=True)
class WeeklyProjectionPoint:
    day_of_week: "int"
    day_label: "str"
    this_week_value: "float | None"
    last_week_value: "float | None"
    # only set for days after today
    projected_value: "float | None"


@dataclass(frozen=True, slots=True)
class WeeklyProjection:
    points: "tuple[WeeklyProjectionPoint, ...]"
    metric: "ProjectionMetric"
    this_week_total: "float | None"
    last_week_total: "float | None"
    projected_end_of_week: "float | None"
    # week-over-week change in percent
    change_percent: "float | None"
