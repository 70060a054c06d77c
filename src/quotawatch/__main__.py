import asyncio
import signal

import httpx
import structlog
from prometheus_client import start_http_server

from quotawatch.cli import parse_args
from quotawatch.collector import Collector
from quotawatch.config import SUPPORTED_PROVIDERS, Config
from quotawatch.history.recorder import HistoryRecorder
from quotawatch.history.store import WeeklyUsageHistoryStore
from quotawatch.logging import setup_logging
from quotawatch.metrics import MetricsUpdater
from quotawatch.provider import claude, codex
from quotawatch.provider.base import ProviderDescriptor
from quotawatch.provider.sources import (
    ChainedCredentialSource,
    CommandSource,
    FileCredentialSource,
    KeychainCredentialSource,
)
from quotawatch.tokens import TokenLogScanner

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_descriptors(config: "Config") -> "list[ProviderDescriptor]":
    descriptors: "list[ProviderDescriptor]" = []
    enabled = config.enabled_providers

    if "claude" in enabled:
        descriptors.append(
            ProviderDescriptor(
                id=claude.PROVIDER,
                resolve_strategies=claude.resolve_strategies,
                credentials=ChainedCredentialSource(
                    [
                        KeychainCredentialSource(claude.KEYCHAIN_SERVICES),
                        FileCredentialSource(claude.CREDENTIALS_FILE),
                    ]
                ),
                session_cookie=config.claude_session_key,
                cli=CommandSource([config.claude_cli_path, "/usage"]),
            )
        )

    if "codex" in enabled:
        descriptors.append(
            ProviderDescriptor(
                id=codex.PROVIDER,
                resolve_strategies=codex.resolve_strategies,
                credentials=FileCredentialSource(codex.AUTH_FILE),
            )
        )
    return descriptors


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level)

    providers = build_descriptors(config)
    if not providers:
        raise SystemExit(
            "No providers configured. Set QUOTAWATCH_PROVIDERS to claude and/or codex."
        )
    for descriptor in providers:
        logger.info("provider_enabled", provider=descriptor.id)

    store = WeeklyUsageHistoryStore(config.history_dir or None)
    recorder = HistoryRecorder(
        store,
        providers=[p.id for p in providers],
        keep_weeks=config.history_keep_weeks,
        known_providers=SUPPORTED_PROVIDERS,
    )
    logger.info("history_directory", path=store.directory)

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        collector = Collector(
            providers,
            MetricsUpdater(),
            recorder,
            store,
            httpx.AsyncClient(timeout=15.0),
            source_mode=config.source_mode,
            web_extras=config.web_extras,
            token_scanners={claude.PROVIDER: TokenLogScanner()},
            scrape_interval_seconds=config.scrape_interval,
        )

        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the collector
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, collector.stop)

        try:
            await collector.run()
        finally:
            logger.info("shutting_down")
            await collector.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
