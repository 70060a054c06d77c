import asyncio
import time
from datetime import datetime

import httpx
import structlog

from quotawatch import projection
from quotawatch.history.recorder import HistoryRecorder
from quotawatch.history.store import WeeklyUsageHistoryStore
from quotawatch.metrics import MetricsUpdater
from quotawatch.models import TokenUsageSnapshot, UsageSnapshot
from quotawatch.provider.base import (
    FetchStrategy,
    ProviderDescriptor,
    SourceMode,
    fetch_usage,
)
from quotawatch.tokens import TokenLogScanner

logger = structlog.get_logger()


class Collector:
    """
    Collector is responsible for orchestrating the periodic
    refresh of usage data. Each cycle fetches a snapshot per
    provider, scans local token logs, lets the history recorder
    persist what is due and refreshes the weekly projections.
    The loop runs until stop() is called, sleeping for the
    configured interval between cycles.
    """

    def __init__(
        self,
        providers: "list[ProviderDescriptor]",
        metrics_updater: "MetricsUpdater",
        recorder: "HistoryRecorder",
        store: "WeeklyUsageHistoryStore",
        http_client: "httpx.AsyncClient",
        source_mode: "SourceMode" = SourceMode.AUTO,
        web_extras: "bool" = False,
        token_scanners: "dict[str, TokenLogScanner] | None" = None,
        scrape_interval_seconds: "int" = 120,
    ) -> "None":
        self._providers = providers
        self._metrics = metrics_updater
        self._recorder = recorder
        self._store = store
        self._http_client = http_client
        self._source_mode = source_mode
        self._web_extras = web_extras
        self._token_scanners = token_scanners or {}
        self._interval = scrape_interval_seconds
        # latest successful results, keyed by provider
        self._snapshots: "dict[str, UsageSnapshot]" = {}
        self._token_snapshots: "dict[str, TokenUsageSnapshot]" = {}
        self._stop_event: "asyncio.Event" = asyncio.Event()

    @property
    def snapshots(self) -> "dict[str, UsageSnapshot]":
        return dict(self._snapshots)

    def stop(self) -> "None":
        """
        signals the collector loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes the shared HTTP client.
        """
        await self._http_client.aclose()

    async def run(self) -> "None":
        """
        runs the main refresh loop. Runs until stop() is called.
        """
        while not self._stop_event.is_set():
            logger.info("refresh_cycle_start")
            await self.collect_once()
            logger.info("refresh_cycle_end")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    async def collect_once(self, now: "datetime | None" = None) -> "None":
        await asyncio.gather(*(self._collect_provider(p) for p in self._providers))

        now = now or datetime.now().astimezone()
        written = self._recorder.record_history_if_needed(
            self._snapshots, self._token_snapshots, now
        )
        for provider in written:
            self._metrics.inc_history_write(provider)

        self._update_projections(now)

    async def _collect_provider(self, descriptor: "ProviderDescriptor") -> "None":
        provider = descriptor.id
        started = time.monotonic()

        context = descriptor.make_context(
            self._source_mode, self._http_client, self._web_extras
        )
        strategies = descriptor.resolve_strategies(context)

        def _on_fallback(
            provider: "str", strategy: "FetchStrategy", error: "Exception"
        ) -> "None":
            self._metrics.inc_fallback(provider, strategy.id)

        try:
            result = await fetch_usage(provider, strategies, context, _on_fallback)
        except Exception:
            logger.exception("usage_fetch_error", provider=provider)
            self._metrics.inc_fetch_error(provider, "usage")
        else:
            self._snapshots[provider] = result.usage
            self._metrics.update_usage(provider, result.usage)
            self._metrics.set_last_fetch_success(provider, time.time())
            logger.info(
                "usage_fetched",
                provider=provider,
                source=result.source_label,
                primary=result.usage.primary.used_percent,
            )
        finally:
            self._metrics.observe_fetch_duration(provider, time.monotonic() - started)

        scanner = self._token_scanners.get(provider)
        if scanner is None:
            return
        try:
            token_snapshot = await asyncio.to_thread(scanner.scan)
        except Exception:
            logger.exception("token_scan_error", provider=provider)
            self._metrics.inc_fetch_error(provider, "tokens")
            return
        if token_snapshot is not None:
            self._token_snapshots[provider] = token_snapshot

    def _update_projections(self, now: "datetime") -> "None":
        for descriptor in self._providers:
            report = self._store.load(descriptor.id)
            if report is None:
                continue
            weekly = projection.compute(
                report.current_week(now), report.previous_week(now), now
            )
            self._metrics.update_projection(descriptor.id, weekly)
            logger.debug(
                "projection_updated",
                provider=descriptor.id,
                metric=weekly.metric.value,
                projected_end_of_week=weekly.projected_end_of_week,
            )
