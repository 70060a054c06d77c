import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Sequence

import httpx
import structlog

from quotawatch.errors import StrategyUnavailable
from quotawatch.models import FetchResult
from quotawatch.provider.sources import CommandSource, CredentialSource
from quotawatch.retry import run_candidates

logger = structlog.get_logger()


class SourceMode(str, Enum):
    AUTO = "auto"
    OAUTH = "oauth"
    WEB = "web"
    CLI = "cli"
    API = "api"


class FetchKind(str, Enum):
    OAUTH = "oauth"
    WEB = "web"
    CLI = "cli"


@dataclass(frozen=True)
class FetchContext:
    """
    FetchContext carries everything a strategy may need for a
    single fetch. It is shared, unchanged, by all candidates
    tried during that fetch.
    """

    source_mode: "SourceMode"
    http_client: "httpx.AsyncClient"
    # availability flags known before fetching, used for
    # strategy resolution only
    has_oauth_credentials: "bool" = False
    has_web_session: "bool" = False
    web_extras_enabled: "bool" = False
    credentials: "CredentialSource | None" = None
    # raw cookie header or bare sessionKey value
    session_cookie: "str" = ""
    cli: "CommandSource | None" = None


class FetchStrategy(Protocol):
    """
    FetchStrategy is one method of acquiring usage data for a
    provider. Strategies are plain values; a provider's set
    of strategies is closed and dispatched through the ordered
    list returned by its resolver.
    """

    @property
    def id(self) -> "str": ...

    @property
    def kind(self) -> "FetchKind": ...

    async def is_available(self, context: "FetchContext") -> "bool": ...

    async def fetch(self, context: "FetchContext") -> "FetchResult": ...

    def should_fallback(
        self, error: "Exception", context: "FetchContext"
    ) -> "bool": ...


# called with (provider, failed strategy, error) whenever the
# pipeline moves on to the next strategy
FallbackObserver = Callable[[str, FetchStrategy, Exception], None]


async def fetch_usage(
    provider: "str",
    strategies: "Sequence[FetchStrategy]",
    context: "FetchContext",
    on_fallback: "FallbackObserver | None" = None,
) -> "FetchResult":
    """
    runs the resolved strategies of a provider one at a time.
    Strategies whose probe fails are skipped silently, the rest
    go through the retry runner, each deciding for itself
    whether its failure is worth falling back from.
    """
    candidates: "list[FetchStrategy]" = []
    for strategy in strategies:
        try:
            available = await strategy.is_available(context)
        except StrategyUnavailable:
            available = False
        if available:
            candidates.append(strategy)
        else:
            logger.debug("strategy_unavailable", provider=provider, strategy=strategy.id)

    # the runner is strictly sequential, so the strategy that
    # produced the error is always the last one attempted
    active: "list[FetchStrategy]" = []

    async def _attempt(strategy: "FetchStrategy") -> "FetchResult":
        active.append(strategy)
        started = time.monotonic()
        result = await strategy.fetch(context)
        logger.debug(
            "strategy_succeeded",
            provider=provider,
            strategy=strategy.id,
            duration=round(time.monotonic() - started, 3),
        )
        return result

    def _should_retry(error: "Exception") -> "bool":
        return active[-1].should_fallback(error, context)

    def _on_retry(strategy: "FetchStrategy", error: "Exception") -> "None":
        logger.info(
            "strategy_fallback",
            provider=provider,
            strategy=strategy.id,
            error=str(error),
        )
        if on_fallback is not None:
            on_fallback(provider, strategy, error)

    return await run_candidates(
        candidates,
        _attempt,
        should_retry=_should_retry,
        on_retry=_on_retry,
    )


@dataclass(frozen=True)
class ProviderDescriptor:
    """
    ProviderDescriptor bundles what the collector needs to
    fetch one provider: its strategy resolver and the boundary
    sources its strategies read from.
    """

    id: "str"
    resolve_strategies: "Callable[[FetchContext], list[FetchStrategy]]"
    credentials: "CredentialSource | None" = None
    session_cookie: "str" = ""
    cli: "CommandSource | None" = None

    def make_context(
        self,
        source_mode: "SourceMode",
        http_client: "httpx.AsyncClient",
        web_extras_enabled: "bool" = False,
    ) -> "FetchContext":
        """
        snapshots the cheap availability flags into an immutable
        context for one fetch.
        """
        return FetchContext(
            source_mode=source_mode,
            http_client=http_client,
            has_oauth_credentials=(
                self.credentials is not None and self.credentials.exists()
            ),
            has_web_session=bool(self.session_cookie.strip()),
            web_extras_enabled=web_extras_enabled,
            credentials=self.credentials,
            session_cookie=self.session_cookie,
            cli=self.cli,
        )
