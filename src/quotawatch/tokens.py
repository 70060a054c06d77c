import glob
import json
import math
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

import structlog

from quotawatch.models import TokenUsageDay, TokenUsageSnapshot
from quotawatch.provider.mapping import parse_timestamp

logger = structlog.get_logger()

DEFAULT_LOG_ROOTS = ("~/.config/claude/projects", "~/.claude/projects")

# USD per million tokens: input, output, cache write, cache read
_PRICING: "dict[str, tuple[float, float, float, float]]" = {
    "opus": (15.0, 75.0, 18.75, 1.50),
    "sonnet": (3.0, 15.0, 3.75, 0.30),
    "haiku": (0.80, 4.0, 1.0, 0.08),
}


@dataclass
class _DayTotals:
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_read_tokens: "int" = 0
    cache_creation_tokens: "int" = 0
    cost_usd: "float" = 0.0
    priced: "bool" = False


def estimate_cost(
    model: "str",
    input_tokens: "int",
    output_tokens: "int",
    cache_creation_tokens: "int",
    cache_read_tokens: "int",
) -> "float | None":
    """
    estimates the list-price cost of one request. Returns None
    for models without a known price.
    """
    lowered = model.lower()
    for family, prices in _PRICING.items():
        if family in lowered:
            per_input, per_output, per_write, per_read = prices
            return (
                input_tokens * per_input
                + output_tokens * per_output
                + cache_creation_tokens * per_write
                + cache_read_tokens * per_read
            ) / 1_000_000
    return None


class TokenLogScanner:
    """
    TokenLogScanner aggregates the token usage the Claude CLI
    writes to its JSONL session logs into per-day totals.

    Requests are attributed to the local calendar day of their
    timestamp. A request can be logged more than once (e.g. on
    resumed sessions); (message id, request id) pairs are only
    counted once.
    """

    def __init__(
        self,
        roots: "Sequence[str]" = DEFAULT_LOG_ROOTS,
        days: "int" = 14,
    ) -> "None":
        self._roots = [os.path.expanduser(r) for r in roots]
        self._days = days

    def scan(self, now: "datetime | None" = None) -> "TokenUsageSnapshot | None":
        now = now or datetime.now().astimezone()
        cutoff = now - timedelta(days=self._days)
        totals: "dict[str, _DayTotals]" = {}
        seen: "set[tuple[str, str]]" = set()

        for path in self._log_files():
            try:
                if os.path.getmtime(path) < cutoff.timestamp():
                    continue
                with open(path, encoding="utf-8", errors="replace") as f:
                    for line in f:
                        self._ingest_line(line, cutoff, totals, seen)
            except OSError:
                logger.debug("token_log_unreadable", path=path)
                continue

        if not totals:
            return None

        daily = tuple(
            TokenUsageDay(
                date=day,
                input_tokens=t.input_tokens,
                output_tokens=t.output_tokens,
                cache_read_tokens=t.cache_read_tokens,
                cache_creation_tokens=t.cache_creation_tokens,
                cost_usd=round(t.cost_usd, 6) if t.priced else None,
            )
            for day, t in sorted(totals.items())
        )
        logger.debug("token_logs_scanned", days=len(daily))
        return TokenUsageSnapshot(daily=daily, updated_at=now)

    def _log_files(self) -> "list[str]":
        files: "list[str]" = []
        for root in self._roots:
            if os.path.isdir(root):
                files.extend(glob.glob(os.path.join(root, "**", "*.jsonl"), recursive=True))
        return files

    @staticmethod
    def _ingest_line(
        line: "str",
        cutoff: "datetime",
        totals: "dict[str, _DayTotals]",
        seen: "set[tuple[str, str]]",
    ) -> "None":
        try:
            entry: "Any" = json.loads(line)
        except ValueError:
            return
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            return

        message = entry.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("usage"), dict):
            return
        timestamp = parse_timestamp(entry.get("timestamp"))
        if timestamp is None or timestamp < cutoff:
            return

        message_id = message.get("id")
        request_id = entry.get("requestId")
        if message_id and request_id:
            key = (str(message_id), str(request_id))
            if key in seen:
                return
            seen.add(key)

        usage = message["usage"]
        input_tokens = _as_int(usage.get("input_tokens"))
        output_tokens = _as_int(usage.get("output_tokens"))
        cache_creation = _as_int(usage.get("cache_creation_input_tokens"))
        cache_read = _as_int(usage.get("cache_read_input_tokens"))

        day = timestamp.astimezone().strftime("%Y-%m-%d")
        t = totals.setdefault(day, _DayTotals())
        t.input_tokens += input_tokens
        t.output_tokens += output_tokens
        t.cache_creation_tokens += cache_creation
        t.cache_read_tokens += cache_read

        cost = estimate_cost(
            str(message.get("model") or ""),
            input_tokens,
            output_tokens,
            cache_creation,
            cache_read,
        )
        if cost is not None:
            t.cost_usd += cost
            t.priced = True


def _as_int(value: "Any") -> "int":
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    return int(value)
