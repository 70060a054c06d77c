from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Mapping, Sequence

import structlog

from quotawatch.history.store import DEFAULT_KEEP_WEEKS, WeeklyUsageHistoryStore
from quotawatch.models import TokenUsageSnapshot, UsageSnapshot, WeeklyUsageRecord

logger = structlog.get_logger()

HISTORY_WRITE_MIN_INTERVAL = timedelta(minutes=15)
PRUNE_CHECK_INTERVAL = timedelta(hours=24)


@dataclass
class RecorderState:
    """
    RecorderState holds the debounce timestamps of a recorder.
    Not synchronized: a recorder must not be invoked
    concurrently.
    """

    # provider -> time of the last persisted write
    last_write: "dict[str, datetime]" = field(default_factory=dict)
    last_prune: "datetime | None" = None


def build_record(
    provider: "str",
    snapshot: "UsageSnapshot | None",
    token_snapshot: "TokenUsageSnapshot | None",
    now: "datetime",
) -> "WeeklyUsageRecord | None":
    """
    converts the latest snapshot and today's token totals into
    a daily record. Returns None when there is neither a weekly
    window nor local token data to record.
    """
    weekly = snapshot.secondary if snapshot is not None else None
    if weekly is None and token_snapshot is None:
        return None

    day_key = now.strftime("%Y-%m-%d")
    # isocalendar() already uses Monday=1 ... Sunday=7
    week_year, week_number, day_of_week = now.isocalendar()
    today = token_snapshot.day(day_key) if token_snapshot is not None else None

    return WeeklyUsageRecord(
        day_key=day_key,
        provider=provider,
        week_number=week_number,
        week_year=week_year,
        day_of_week=day_of_week,
        recorded_at=now,
        weekly_used_percent=weekly.used_percent if weekly is not None else None,
        session_used_percent=snapshot.primary.used_percent if snapshot is not None else None,
        weekly_resets_at=weekly.resets_at if weekly is not None else None,
        total_tokens=today.total_tokens if today is not None else None,
        input_tokens=today.input_tokens if today is not None else None,
        output_tokens=today.output_tokens if today is not None else None,
        cost_usd=today.cost_usd if today is not None else None,
    )


class HistoryRecorder:
    """
    HistoryRecorder turns the latest snapshot of each enabled
    provider into at most one persisted write per provider
    every 15 minutes, and prunes all stored histories at most
    once a day.
    """

    def __init__(
        self,
        store: "WeeklyUsageHistoryStore",
        providers: "Sequence[str]",
        keep_weeks: "int" = DEFAULT_KEEP_WEEKS,
        known_providers: "Sequence[str] | None" = None,
        state: "RecorderState | None" = None,
        clock: "Callable[[], datetime] | None" = None,
    ) -> "None":
        self._store = store
        self._providers = list(providers)
        # pruning also covers providers that are currently disabled
        self._known_providers = list(known_providers or providers)
        self._keep_weeks = keep_weeks
        self._state = state or RecorderState()
        self._clock = clock or (lambda: datetime.now().astimezone())

    @property
    def state(self) -> "RecorderState":
        return self._state

    def record_history_if_needed(
        self,
        snapshots: "Mapping[str, UsageSnapshot]",
        token_snapshots: "Mapping[str, TokenUsageSnapshot]",
        now: "datetime | None" = None,
    ) -> "list[str]":
        """
        records every enabled provider that is due and returns
        the providers that were written.
        """
        now = now or self._clock()
        written: "list[str]" = []
        for provider in self._providers:
            record = self.record_snapshot(
                provider,
                snapshots.get(provider),
                token_snapshots.get(provider),
                now,
            )
            if record is not None:
                written.append(provider)

        self.prune_if_needed(now)
        return written

    def record_snapshot(
        self,
        provider: "str",
        snapshot: "UsageSnapshot | None",
        token_snapshot: "TokenUsageSnapshot | None",
        now: "datetime",
    ) -> "WeeklyUsageRecord | None":
        last_write = self._state.last_write.get(provider)
        if last_write is not None and now - last_write < HISTORY_WRITE_MIN_INTERVAL:
            return None

        record = build_record(provider, snapshot, token_snapshot, now)
        if record is None:
            logger.debug("history_nothing_to_record", provider=provider)
            return None

        self._store.save(record)
        self._state.last_write[provider] = now
        logger.debug("history_recorded", provider=provider, day_key=record.day_key)
        return record

    def prune_if_needed(self, now: "datetime") -> "bool":
        last_prune = self._state.last_prune
        if last_prune is not None and now - last_prune < PRUNE_CHECK_INTERVAL:
            return False
        self._state.last_prune = now

        for provider in self._known_providers:
            self._store.prune(provider, keeping_weeks=self._keep_weeks, now=now)
        return True
