from datetime import datetime, timezone
from typing import Any

from quotawatch.models import ProviderCostSnapshot, RateWindow

SESSION_WINDOW_MINUTES = 5 * 60
WEEKLY_WINDOW_MINUTES = 7 * 24 * 60

# limits at or above this (in the base currency) are taken as
# reported at 100x their real magnitude
_COST_RESCALE_THRESHOLD = 1000.0

_DAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def parse_timestamp(value: "Any") -> "datetime | None":
    """
    parses an ISO-8601 string or a unix timestamp into an
    aware datetime. Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def describe_reset(resets_at: "datetime", now: "datetime | None" = None) -> "str":
    """
    human-readable reset time, e.g. "resets in 2h 5m" or
    "resets Thu 09:00" when further than 20 hours away.
    """
    now = now or datetime.now(timezone.utc)
    seconds = (resets_at - now).total_seconds()
    if seconds <= 0:
        return "resets soon"
    if seconds < 20 * 3600:
        hours, rem = divmod(int(seconds), 3600)
        minutes = rem // 60
        if hours > 0:
            return f"resets in {hours}h {minutes}m"
        return f"resets in {minutes}m"

    local = resets_at.astimezone()
    return f"resets {_DAYS[local.weekday()]} {local.strftime('%H:%M')}"


def make_window(
    used_percent: "Any",
    window_minutes: "int | None",
    resets_at: "Any" = None,
    now: "datetime | None" = None,
) -> "RateWindow | None":
    """
    builds a RateWindow from raw payload values. Returns None
    when no usable percentage is present.
    """
    if used_percent is None or isinstance(used_percent, bool):
        return None
    try:
        percent = float(used_percent)
    except (TypeError, ValueError):
        return None

    reset_date = parse_timestamp(resets_at)
    return RateWindow(
        used_percent=percent,
        window_minutes=window_minutes,
        resets_at=reset_date,
        reset_description=describe_reset(reset_date, now) if reset_date else None,
    )


def scale_cost(
    used: "float",
    limit: "float",
    login_method: "str | None",
) -> "tuple[float, float]":
    """
    corrects spend amounts that non-enterprise plans report
    100x too high. The threshold is an empirical guess, not a
    documented upstream contract.
    """
    normalized = (login_method or "").strip().lower()
    if "enterprise" not in normalized and limit >= _COST_RESCALE_THRESHOLD:
        return used / 100.0, limit / 100.0
    return used, limit


def make_cost(
    used: "float",
    limit: "float",
    currency: "Any",
    period: "str",
    login_method: "str | None",
    updated_at: "datetime | None" = None,
) -> "ProviderCostSnapshot":
    used, limit = scale_cost(used, limit, login_method)
    code = currency.strip() if isinstance(currency, str) else ""
    return ProviderCostSnapshot(
        used=used,
        limit=limit,
        currency_code=code or "USD",
        period=period,
        resets_at=None,
        updated_at=updated_at,
    )
