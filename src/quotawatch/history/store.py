import contextlib
import json
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from quotawatch.models import WeeklyUsageRecord, WeeklyUsageReport
from quotawatch.provider.mapping import parse_timestamp

logger = structlog.get_logger()

APP_NAME = "QuotaWatch"
DIRECTORY_NAME = "usage-history"
DEFAULT_KEEP_WEEKS = 12


def default_history_directory(app_name: "str" = APP_NAME) -> "str":
    """
    resolves <app-support>/<app-name>/usage-history for the
    current platform.
    """
    if sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    return os.path.join(base, app_name, DIRECTORY_NAME)


class WeeklyUsageHistoryStore:
    """
    WeeklyUsageHistoryStore persists one JSON report per
    provider. Persistence is best-effort: unreadable files load
    as "no history" and failed writes are logged and dropped,
    never raised to the caller.

    Every write replaces the whole file atomically, so a reader
    sees either the previous or the new report.
    """

    def __init__(self, directory: "str | None" = None) -> "None":
        self._directory = directory or default_history_directory()

    @property
    def directory(self) -> "str":
        return self._directory

    def file_path(self, provider: "str") -> "str":
        return os.path.join(self._directory, f"{provider}-weekly-v1.json")

    def load(self, provider: "str") -> "WeeklyUsageReport | None":
        path = self.file_path(provider)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("history_load_failed", provider=provider, path=path)
            return None

        try:
            records = [_decode_record(r) for r in data["records"]]
        except (KeyError, TypeError, ValueError, OverflowError):
            logger.warning("history_corrupt", provider=provider, path=path)
            return None
        return WeeklyUsageReport(records=records)

    def save(self, record: "WeeklyUsageRecord") -> "None":
        """
        upserts the record by day key (last write wins) and
        rewrites the provider's report.
        """
        report = self.load(record.provider) or WeeklyUsageReport()
        report.upsert(record)
        self._write(record.provider, report)

    def prune(
        self,
        provider: "str",
        keeping_weeks: "int" = DEFAULT_KEEP_WEEKS,
        now: "datetime | None" = None,
    ) -> "int":
        """
        removes records from ISO weeks before now - keeping_weeks.
        The file is only rewritten when something was removed.
        Returns the number of removed records.
        """
        report = self.load(provider)
        if report is None:
            return 0

        now = now or datetime.now().astimezone()
        cutoff_year, cutoff_week, _ = (now - timedelta(weeks=keeping_weeks)).isocalendar()
        cutoff = (cutoff_year, cutoff_week)

        before = len(report.records)
        report.records = [
            r for r in report.records if (r.week_year, r.week_number) >= cutoff
        ]
        removed = before - len(report.records)
        if removed:
            logger.info("history_pruned", provider=provider, removed=removed)
            self._write(provider, report)
        return removed

    def _write(self, provider: "str", report: "WeeklyUsageReport") -> "None":
        path = self.file_path(provider)
        tmp_path: "str | None" = None
        try:
            payload = json.dumps(
                {"records": [_encode_record(r) for r in report.records]},
                indent=2,
            )
            os.makedirs(self._directory, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._directory,
                prefix=f".{provider}-",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_path = f.name
                f.write(payload)
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError):
            logger.warning("history_write_failed", provider=provider, path=path, exc_info=True)
        finally:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)


def _format_timestamp(value: "datetime | None") -> "str | None":
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _encode_record(record: "WeeklyUsageRecord") -> "dict[str, Any]":
    data: "dict[str, Any]" = {
        "dayKey": record.day_key,
        "provider": record.provider,
        "weekNumber": record.week_number,
        "weekYear": record.week_year,
        "dayOfWeek": record.day_of_week,
        "weeklyUsedPercent": record.weekly_used_percent,
        "sessionUsedPercent": record.session_used_percent,
        "weeklyResetsAt": _format_timestamp(record.weekly_resets_at),
        "totalTokens": record.total_tokens,
        "inputTokens": record.input_tokens,
        "outputTokens": record.output_tokens,
        "costUSD": record.cost_usd,
        "recordedAt": _format_timestamp(record.recorded_at),
    }
    # optional fields are omitted rather than written as null
    return {k: v for k, v in data.items() if v is not None}


def _decode_record(data: "dict[str, Any]") -> "WeeklyUsageRecord":
    recorded_at = parse_timestamp(data["recordedAt"])
    if recorded_at is None:
        raise ValueError("invalid recordedAt")

    return WeeklyUsageRecord(
        day_key=str(data["dayKey"]),
        provider=str(data["provider"]),
        week_number=int(data["weekNumber"]),
        week_year=int(data["weekYear"]),
        day_of_week=int(data["dayOfWeek"]),
        recorded_at=recorded_at,
        weekly_used_percent=_optional_float(data.get("weeklyUsedPercent")),
        session_used_percent=_optional_float(data.get("sessionUsedPercent")),
        weekly_resets_at=parse_timestamp(data.get("weeklyResetsAt")),
        total_tokens=_optional_int(data.get("totalTokens")),
        input_tokens=_optional_int(data.get("inputTokens")),
        output_tokens=_optional_int(data.get("outputTokens")),
        cost_usd=_optional_float(data.get("costUSD")),
    )


def _optional_float(value: "Any") -> "float | None":
    return None if value is None else float(value)


def _optional_int(value: "Any") -> "int | None":
    return None if value is None else int(value)
