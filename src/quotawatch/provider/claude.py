import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from quotawatch.errors import FetchFailed, OAuthFailed, ParseFailed
from quotawatch.models import (
    FetchResult,
    ProviderCostSnapshot,
    ProviderIdentitySnapshot,
    RateWindow,
    UsageSnapshot,
)
from quotawatch.provider.base import FetchContext, FetchKind, FetchStrategy, SourceMode
from quotawatch.provider.mapping import (
    SESSION_WINDOW_MINUTES,
    WEEKLY_WINDOW_MINUTES,
    make_cost,
    make_window,
    parse_timestamp,
)

logger = structlog.get_logger()

PROVIDER = "claude"

CLAUDE_OAUTH_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
CLAUDE_OAUTH_BETA = "oauth-2025-04-20"
CLAUDE_WEB_BASE_URL = "https://claude.ai"

# keychain items written by the Claude CLI, newest name first
KEYCHAIN_SERVICES = ("Claude Code-credentials", "Claude Code")
CREDENTIALS_FILE = "~/.claude/.credentials.json"

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%\s*used", re.IGNORECASE)
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


@dataclass(frozen=True)
class ClaudeOAuthCredentials:
    access_token: "str"
    refresh_token: "str | None" = None
    expires_at: "datetime | None" = None
    rate_limit_tier: "str | None" = None
    subscription_type: "str | None" = None

    @classmethod
    def parse(cls, text: "str") -> "ClaudeOAuthCredentials":
        """
        parses the credentials document stored by the Claude CLI,
        either wrapped in "claudeAiOauth" or bare.
        """
        try:
            data = json.loads(text)
        except ValueError as err:
            raise OAuthFailed("credentials are not valid JSON") from err
        if not isinstance(data, dict):
            raise OAuthFailed("credentials are not a JSON object")

        oauth = data.get("claudeAiOauth", data)
        if not isinstance(oauth, dict):
            raise OAuthFailed("credentials are not a JSON object")
        token = oauth.get("accessToken")
        if not isinstance(token, str) or not token.strip():
            raise OAuthFailed("missing access token")

        expires_at = oauth.get("expiresAt")
        # the CLI stores milliseconds since the epoch
        if isinstance(expires_at, (int, float)) and expires_at > 10**11:
            expires_at = expires_at / 1000.0

        return cls(
            access_token=token.strip(),
            refresh_token=oauth.get("refreshToken"),
            expires_at=parse_timestamp(expires_at),
            rate_limit_tier=oauth.get("rateLimitTier"),
            subscription_type=oauth.get("subscriptionType"),
        )

    def is_expired(self, now: "datetime | None" = None) -> "bool":
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(timezone.utc))


def infer_plan(rate_limit_tier: "str | None") -> "str | None":
    tier = (rate_limit_tier or "").lower()
    if "max" in tier:
        return "Claude Max"
    if "pro" in tier:
        return "Claude Pro"
    if "team" in tier:
        return "Claude Team"
    if "enterprise" in tier:
        return "Claude Enterprise"
    return None


def map_usage(
    payload: "Any",
    login_method: "str | None" = None,
    now: "datetime | None" = None,
) -> "UsageSnapshot":
    """
    maps a Claude usage payload (same shape for the OAuth and
    web endpoints) into a UsageSnapshot. The 5-hour window is
    required.
    """
    if not isinstance(payload, dict):
        raise ParseFailed("usage payload is not an object")
    now = now or datetime.now(timezone.utc)

    def _window(key: "str", minutes: "int") -> "RateWindow | None":
        raw = payload.get(key)
        if not isinstance(raw, dict):
            return None
        return make_window(raw.get("utilization"), minutes, raw.get("resets_at"), now)

    primary = _window("five_hour", SESSION_WINDOW_MINUTES)
    if primary is None:
        raise ParseFailed("missing session data")

    weekly = _window("seven_day", WEEKLY_WINDOW_MINUTES)
    model_specific = _window("seven_day_sonnet", WEEKLY_WINDOW_MINUTES) or _window(
        "seven_day_opus", WEEKLY_WINDOW_MINUTES
    )

    return UsageSnapshot(
        primary=primary,
        secondary=weekly,
        tertiary=model_specific,
        provider_cost=map_extra_usage_cost(payload.get("extra_usage"), login_method, now),
        updated_at=now,
        identity=ProviderIdentitySnapshot(provider=PROVIDER, login_method=login_method),
    )


def map_extra_usage_cost(
    extra: "Any",
    login_method: "str | None",
    now: "datetime | None" = None,
) -> "ProviderCostSnapshot | None":
    if not isinstance(extra, dict) or extra.get("is_enabled") is not True:
        return None
    used = extra.get("used_credits")
    limit = extra.get("monthly_limit")
    if not isinstance(used, (int, float)) or not isinstance(limit, (int, float)):
        return None

    # amounts are reported in cents
    return make_cost(
        used / 100.0,
        limit / 100.0,
        extra.get("currency"),
        "Monthly",
        login_method,
        updated_at=now,
    )


def parse_cli_usage(text: "str", now: "datetime | None" = None) -> "UsageSnapshot":
    """
    parses the text printed by the Claude CLI usage panel:

        Current session
        ████▌                     13% used
        Resets 5pm (Europe/Berlin)
    """
    now = now or datetime.now(timezone.utc)
    sections: "dict[str, tuple[float, str | None]]" = {}
    current: "str | None" = None

    for raw_line in _ANSI_RE.sub("", text).splitlines():
        line = raw_line.strip()
        lower = line.lower()
        if lower.startswith("current session"):
            current = "session"
        elif lower.startswith("current week"):
            current = "weekly" if "all models" in lower else "model"
        elif current is None:
            continue

        match = _PERCENT_RE.search(line)
        if match and current not in sections:
            sections[current] = (float(match.group(1)), None)
        elif lower.startswith("resets") and current in sections:
            percent, _ = sections[current]
            sections[current] = (percent, line)

    def _window(name: "str", minutes: "int") -> "RateWindow | None":
        if name not in sections:
            return None
        percent, description = sections[name]
        return RateWindow(
            used_percent=percent,
            window_minutes=minutes,
            reset_description=description,
        )

    primary = _window("session", SESSION_WINDOW_MINUTES)
    if primary is None:
        raise ParseFailed("missing session data")

    return UsageSnapshot(
        primary=primary,
        secondary=_window("weekly", WEEKLY_WINDOW_MINUTES),
        tertiary=_window("model", WEEKLY_WINDOW_MINUTES),
        updated_at=now,
        identity=ProviderIdentitySnapshot(provider=PROVIDER),
    )


def parse_cookie_string(raw: "str") -> "dict[str, str]":
    """
    parses "key=val; key2=val2" or a bare sessionKey value.
    """
    raw = raw.strip()
    if "=" not in raw:
        return {"sessionKey": raw}
    cookies: "dict[str, str]" = {}
    for part in raw.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep:
            cookies[key.strip()] = value.strip()
    return cookies


async def _get_json(
    client: "httpx.AsyncClient",
    url: "str",
    headers: "dict[str, str]",
) -> "Any":
    try:
        resp = await client.get(url, headers=headers)
    except httpx.HTTPError as err:
        raise FetchFailed(f"request to {url} failed: {err}") from err

    if resp.status_code in (401, 403):
        raise OAuthFailed(f"{url} rejected credentials ({resp.status_code})")
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as err:
        raise FetchFailed(f"{url} returned {resp.status_code}") from err

    try:
        return resp.json()
    except ValueError as err:
        raise ParseFailed(f"{url} did not return JSON") from err


async def fetch_web_usage(context: "FetchContext") -> "Any":
    """
    fetches the usage payload of the active organization with
    the browser session cookie.
    """
    cookies = parse_cookie_string(context.session_cookie)
    headers = {
        "Accept": "application/json",
        "Cookie": "; ".join(f"{k}={v}" for k, v in cookies.items()),
    }

    org_id = cookies.get("lastActiveOrg") or cookies.get("routingHint")
    if not org_id:
        orgs = await _get_json(
            context.http_client, f"{CLAUDE_WEB_BASE_URL}/api/organizations", headers
        )
        if isinstance(orgs, list) and orgs and isinstance(orgs[0], dict):
            org_id = orgs[0].get("uuid") or orgs[0].get("id")
    if not org_id:
        raise ParseFailed("could not determine organization id")

    logger.debug("claude_web_org", org_id=org_id)
    return await _get_json(
        context.http_client,
        f"{CLAUDE_WEB_BASE_URL}/api/organizations/{org_id}/usage",
        headers,
    )


def _falls_back(error: "Exception", context: "FetchContext") -> "bool":
    # explicit modes never fall back; ParseFailed means the
    # provider answered with something unusable
    if context.source_mode != SourceMode.AUTO:
        return False
    return isinstance(error, (OAuthFailed, FetchFailed))


@dataclass(frozen=True)
class ClaudeOAuthFetchStrategy:
    id: "str" = "claude.oauth"
    kind: "FetchKind" = FetchKind.OAUTH

    async def is_available(self, context: "FetchContext") -> "bool":
        return context.credentials is not None and context.credentials.exists()

    async def fetch(self, context: "FetchContext") -> "FetchResult":
        if context.credentials is None:
            raise OAuthFailed("no credential source configured")
        credentials = ClaudeOAuthCredentials.parse(await context.credentials.read())
        if credentials.is_expired():
            raise OAuthFailed("access token expired")

        payload = await _get_json(
            context.http_client,
            CLAUDE_OAUTH_USAGE_URL,
            {
                "Authorization": f"Bearer {credentials.access_token}",
                "anthropic-beta": CLAUDE_OAUTH_BETA,
                "Accept": "application/json",
            },
        )
        usage = map_usage(payload, login_method=infer_plan(credentials.rate_limit_tier))
        return FetchResult(usage, "oauth", self.id, self.kind.value)

    def should_fallback(self, error: "Exception", context: "FetchContext") -> "bool":
        return _falls_back(error, context)


@dataclass(frozen=True)
class ClaudeWebFetchStrategy:
    id: "str" = "claude.web"
    kind: "FetchKind" = FetchKind.WEB

    async def is_available(self, context: "FetchContext") -> "bool":
        return bool(context.session_cookie.strip())

    async def fetch(self, context: "FetchContext") -> "FetchResult":
        usage = map_usage(await fetch_web_usage(context))
        return FetchResult(usage, "web", self.id, self.kind.value)

    def should_fallback(self, error: "Exception", context: "FetchContext") -> "bool":
        return _falls_back(error, context)


@dataclass(frozen=True)
class ClaudeCLIFetchStrategy:
    id: "str" = "claude.cli"
    kind: "FetchKind" = FetchKind.CLI
    # also pull the spend snapshot from the web session
    use_web_extras: "bool" = False

    async def is_available(self, context: "FetchContext") -> "bool":
        return context.cli is not None and context.cli.exists()

    async def fetch(self, context: "FetchContext") -> "FetchResult":
        if context.cli is None:
            raise FetchFailed("no CLI configured")
        usage = parse_cli_usage(await context.cli.read())

        if self.use_web_extras:
            usage = await self._with_web_extras(usage, context)
        return FetchResult(usage, "cli", self.id, self.kind.value)

    async def _with_web_extras(
        self, usage: "UsageSnapshot", context: "FetchContext"
    ) -> "UsageSnapshot":
        try:
            web = map_usage(await fetch_web_usage(context))
        except (FetchFailed, OAuthFailed, ParseFailed) as err:
            logger.warning("claude_web_extras_failed", error=str(err))
            return usage

        if web.provider_cost is None:
            return usage
        return UsageSnapshot(
            primary=usage.primary,
            secondary=usage.secondary,
            tertiary=usage.tertiary,
            provider_cost=web.provider_cost,
            updated_at=usage.updated_at,
            identity=usage.identity,
        )

    def should_fallback(self, error: "Exception", context: "FetchContext") -> "bool":
        # last resort, nothing left to fall back to
        return False


@dataclass(frozen=True)
class ClaudeUsageStrategy:
    data_source: "SourceMode"
    use_web_extras: "bool"


def resolve_usage_strategy(
    selected: "SourceMode",
    web_extras_enabled: "bool",
    has_web_session: "bool",
    has_oauth_credentials: "bool",
) -> "ClaudeUsageStrategy":
    """
    picks the preferred data source. Under auto: OAuth when
    credentials are known, else the web session, else the CLI.
    """
    if selected == SourceMode.AUTO:
        if has_oauth_credentials:
            return ClaudeUsageStrategy(SourceMode.OAUTH, use_web_extras=False)
        if has_web_session:
            return ClaudeUsageStrategy(SourceMode.WEB, use_web_extras=False)
        return ClaudeUsageStrategy(SourceMode.CLI, use_web_extras=False)

    use_web_extras = selected == SourceMode.CLI and web_extras_enabled and has_web_session
    return ClaudeUsageStrategy(selected, use_web_extras=use_web_extras)


def resolve_strategies(context: "FetchContext") -> "list[FetchStrategy]":
    """
    returns the ordered strategies for a fetch. Under auto the
    preferred source comes first, followed by the other known
    sources, with the CLI always last.
    """
    decision = resolve_usage_strategy(
        context.source_mode,
        web_extras_enabled=context.web_extras_enabled,
        has_web_session=context.has_web_session,
        has_oauth_credentials=context.has_oauth_credentials,
    )

    if context.source_mode == SourceMode.AUTO:
        known = {
            SourceMode.OAUTH: context.has_oauth_credentials,
            SourceMode.WEB: context.has_web_session,
            SourceMode.CLI: True,
        }
        order = [decision.data_source] + [
            mode for mode, present in known.items()
            if present and mode != decision.data_source
        ]
        return [_make_strategy(mode, use_web_extras=False) for mode in order]

    strategy = _make_strategy(decision.data_source, decision.use_web_extras)
    # Claude has no API-key usage endpoint
    return [strategy] if strategy is not None else []


def _make_strategy(
    mode: "SourceMode", use_web_extras: "bool"
) -> "FetchStrategy | None":
    if mode == SourceMode.OAUTH:
        return ClaudeOAuthFetchStrategy()
    if mode == SourceMode.WEB:
        return ClaudeWebFetchStrategy()
    if mode == SourceMode.CLI:
        return ClaudeCLIFetchStrategy(use_web_extras=use_web_extras)
    return None
