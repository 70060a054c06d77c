import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from quotawatch.errors import FetchFailed, OAuthFailed, ParseFailed
from quotawatch.models import (
    FetchResult,
    ProviderIdentitySnapshot,
    RateWindow,
    UsageSnapshot,
)
from quotawatch.provider.base import FetchContext, FetchKind, FetchStrategy, SourceMode
from quotawatch.provider.mapping import make_window

PROVIDER = "codex"

CODEX_USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"
AUTH_FILE = "~/.codex/auth.json"


def map_usage(payload: "Any", now: "datetime | None" = None) -> "UsageSnapshot":
    """
    maps the ChatGPT rate-limit payload into a UsageSnapshot.
    """
    if not isinstance(payload, dict):
        raise ParseFailed("usage payload is not an object")
    now = now or datetime.now(timezone.utc)
    rate_limit = payload.get("rate_limit")
    if not isinstance(rate_limit, dict):
        rate_limit = {}

    def _window(key: "str") -> "RateWindow | None":
        raw = rate_limit.get(key)
        if not isinstance(raw, dict):
            return None
        seconds = raw.get("limit_window_seconds")
        minutes = (
            int(seconds) // 60
            if isinstance(seconds, (int, float)) and math.isfinite(seconds)
            else None
        )
        return make_window(raw.get("used_percent"), minutes, raw.get("reset_at"), now)

    primary = _window("primary_window")
    if primary is None:
        raise ParseFailed("missing session data")

    plan = payload.get("plan_type")
    return UsageSnapshot(
        primary=primary,
        secondary=_window("secondary_window"),
        updated_at=now,
        identity=ProviderIdentitySnapshot(
            provider=PROVIDER,
            account_email=payload.get("email"),
            login_method=plan if isinstance(plan, str) else None,
        ),
    )


@dataclass(frozen=True)
class CodexOAuthFetchStrategy:
    id: "str" = "codex.oauth"
    kind: "FetchKind" = FetchKind.OAUTH

    async def is_available(self, context: "FetchContext") -> "bool":
        return context.credentials is not None and context.credentials.exists()

    async def fetch(self, context: "FetchContext") -> "FetchResult":
        if context.credentials is None:
            raise OAuthFailed("no credential source configured")
        token, account_id = _parse_auth(await context.credentials.read())

        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if account_id:
            headers["ChatGPT-Account-Id"] = account_id

        try:
            resp = await context.http_client.get(CODEX_USAGE_URL, headers=headers)
        except httpx.HTTPError as err:
            raise FetchFailed(f"request to {CODEX_USAGE_URL} failed: {err}") from err
        if resp.status_code in (401, 403):
            raise OAuthFailed(f"usage endpoint rejected token ({resp.status_code})")
        if resp.status_code >= 400:
            raise FetchFailed(f"usage endpoint returned {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as err:
            raise ParseFailed("usage endpoint did not return JSON") from err
        return FetchResult(map_usage(payload), "oauth", self.id, self.kind.value)

    def should_fallback(self, error: "Exception", context: "FetchContext") -> "bool":
        return False


def _parse_auth(text: "str") -> "tuple[str, str | None]":
    try:
        data = json.loads(text)
    except ValueError as err:
        raise OAuthFailed("auth file is not valid JSON") from err

    tokens = data.get("tokens") if isinstance(data, dict) else None
    if not isinstance(tokens, dict) or not tokens.get("access_token"):
        raise OAuthFailed("missing access token")
    return tokens["access_token"], tokens.get("account_id")


def resolve_strategies(context: "FetchContext") -> "list[FetchStrategy]":
    if context.source_mode in (SourceMode.AUTO, SourceMode.OAUTH):
        return [CodexOAuthFetchStrategy()]
    return []
