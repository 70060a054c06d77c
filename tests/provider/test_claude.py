from datetime import datetime, timezone

import httpx
import pytest
import respx
from fakes import CLI_OUTPUT, USAGE_PAYLOAD, FakeSource, claude_credentials, make_context

from quotawatch.errors import FetchFailed, OAuthFailed, ParseFailed
from quotawatch.provider.base import SourceMode
from quotawatch.provider.claude import (
    CLAUDE_OAUTH_USAGE_URL,
    CLAUDE_WEB_BASE_URL,
    ClaudeCLIFetchStrategy,
    ClaudeOAuthCredentials,
    ClaudeOAuthFetchStrategy,
    ClaudeWebFetchStrategy,
    infer_plan,
    map_extra_usage_cost,
    map_usage,
    parse_cli_usage,
    parse_cookie_string,
    resolve_strategies,
    resolve_usage_strategy,
)

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class TestResolveUsageStrategy:
    def test_auto_prefers_oauth(self) -> "None":
        decision = resolve_usage_strategy(
            SourceMode.AUTO,
            web_extras_enabled=True,
            has_web_session=True,
            has_oauth_credentials=True,
        )
        assert decision.data_source == SourceMode.OAUTH
        assert decision.use_web_extras is False

    def test_auto_uses_web_without_credentials(self) -> "None":
        decision = resolve_usage_strategy(
            SourceMode.AUTO,
            web_extras_enabled=False,
            has_web_session=True,
            has_oauth_credentials=False,
        )
        assert decision.data_source == SourceMode.WEB

    def test_auto_falls_back_to_cli(self) -> "None":
        decision = resolve_usage_strategy(
            SourceMode.AUTO,
            web_extras_enabled=False,
            has_web_session=False,
            has_oauth_credentials=False,
        )
        assert decision.data_source == SourceMode.CLI

    def test_cli_with_web_extras(self) -> "None":
        decision = resolve_usage_strategy(
            SourceMode.CLI,
            web_extras_enabled=True,
            has_web_session=True,
            has_oauth_credentials=True,
        )
        assert decision.data_source == SourceMode.CLI
        assert decision.use_web_extras is True

    def test_web_extras_need_a_session(self) -> "None":
        decision = resolve_usage_strategy(
            SourceMode.CLI,
            web_extras_enabled=True,
            has_web_session=False,
            has_oauth_credentials=False,
        )
        assert decision.use_web_extras is False

    def test_web_extras_only_for_cli(self) -> "None":
        decision = resolve_usage_strategy(
            SourceMode.OAUTH,
            web_extras_enabled=True,
            has_web_session=True,
            has_oauth_credentials=True,
        )
        assert decision.data_source == SourceMode.OAUTH
        assert decision.use_web_extras is False


class TestResolveStrategies:
    @pytest.mark.asyncio
    async def test_auto_orders_known_sources(self) -> "None":
        async with httpx.AsyncClient() as client:
            context = make_context(
                client, credentials=claude_credentials(), session_cookie="sk-session"
            )
            ids = [s.id for s in resolve_strategies(context)]
        assert ids == ["claude.oauth", "claude.web", "claude.cli"]

    @pytest.mark.asyncio
    async def test_auto_without_known_sources_is_cli_only(self) -> "None":
        async with httpx.AsyncClient() as client:
            ids = [s.id for s in resolve_strategies(make_context(client))]
        assert ids == ["claude.cli"]

    @pytest.mark.asyncio
    async def test_auto_without_credentials_starts_with_web(self) -> "None":
        async with httpx.AsyncClient() as client:
            context = make_context(client, session_cookie="sk-session")
            ids = [s.id for s in resolve_strategies(context)]
        assert ids == ["claude.web", "claude.cli"]

    @pytest.mark.asyncio
    async def test_explicit_mode_returns_single_strategy(self) -> "None":
        async with httpx.AsyncClient() as client:
            context = make_context(
                client,
                source_mode=SourceMode.WEB,
                credentials=claude_credentials(),
                session_cookie="sk-session",
            )
            strategies = resolve_strategies(context)
        assert [s.id for s in strategies] == ["claude.web"]

    @pytest.mark.asyncio
    async def test_cli_mode_composes_web_extras(self) -> "None":
        async with httpx.AsyncClient() as client:
            context = make_context(
                client,
                source_mode=SourceMode.CLI,
                session_cookie="sk-session",
                web_extras_enabled=True,
            )
            strategies = resolve_strategies(context)
        assert strategies == [ClaudeCLIFetchStrategy(use_web_extras=True)]

    @pytest.mark.asyncio
    async def test_api_mode_has_no_strategy(self) -> "None":
        async with httpx.AsyncClient() as client:
            context = make_context(client, source_mode=SourceMode.API)
            assert resolve_strategies(context) == []


class TestMapUsage:
    def test_maps_windows(self) -> "None":
        snapshot = map_usage(USAGE_PAYLOAD, login_method="Claude Max", now=NOW)

        assert snapshot.primary.used_percent == 12.0
        assert snapshot.primary.window_minutes == 300
        assert snapshot.primary.resets_at == datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)
        assert snapshot.primary.reset_description == "resets in 3h 0m"
        assert snapshot.secondary.used_percent == 41.5
        assert snapshot.secondary.window_minutes == 10080
        assert snapshot.tertiary.used_percent == 7.0
        assert snapshot.tertiary.resets_at is None
        assert snapshot.provider_cost is None
        assert snapshot.identity.login_method == "Claude Max"
        assert snapshot.updated_at == NOW

    def test_missing_session_window_fails(self) -> "None":
        payload = dict(USAGE_PAYLOAD, five_hour=None)
        with pytest.raises(ParseFailed):
            map_usage(payload, now=NOW)

    def test_missing_utilization_fails(self) -> "None":
        payload = dict(USAGE_PAYLOAD, five_hour={"resets_at": None})
        with pytest.raises(ParseFailed):
            map_usage(payload, now=NOW)

    def test_non_object_payload_fails(self) -> "None":
        with pytest.raises(ParseFailed):
            map_usage(["not", "an", "object"])

    def test_percent_is_clamped(self) -> "None":
        payload = dict(USAGE_PAYLOAD, five_hour={"utilization": 140.0})
        assert map_usage(payload, now=NOW).primary.used_percent == 100.0

    def test_opus_used_when_sonnet_missing(self) -> "None":
        payload = dict(
            USAGE_PAYLOAD,
            seven_day_sonnet=None,
            seven_day_opus={"utilization": 55.0},
        )
        assert map_usage(payload, now=NOW).tertiary.used_percent == 55.0


class TestExtraUsageCost:
    def test_converts_cents(self) -> "None":
        cost = map_extra_usage_cost(
            {"is_enabled": True, "used_credits": 5000, "monthly_limit": 10000},
            "Claude Pro",
        )
        assert cost.used == 50.0
        assert cost.limit == 100.0
        assert cost.currency_code == "USD"
        assert cost.period == "Monthly"

    def test_rescales_implausible_limit(self) -> "None":
        cost = map_extra_usage_cost(
            {"is_enabled": True, "used_credits": 50000, "monthly_limit": 200000},
            "Claude Max",
        )
        assert cost.used == pytest.approx(5.0)
        assert cost.limit == pytest.approx(20.0)

    def test_enterprise_is_not_rescaled(self) -> "None":
        cost = map_extra_usage_cost(
            {
                "is_enabled": True,
                "used_credits": 50000,
                "monthly_limit": 200000,
                "currency": " EUR ",
            },
            "Claude Enterprise",
        )
        assert cost.used == 500.0
        assert cost.limit == 2000.0
        assert cost.currency_code == "EUR"

    def test_disabled_or_incomplete(self) -> "None":
        assert map_extra_usage_cost(None, None) is None
        assert map_extra_usage_cost({"is_enabled": False}, None) is None
        assert map_extra_usage_cost({"is_enabled": True, "used_credits": 1}, None) is None


class TestInferPlan:
    def test_known_tiers(self) -> "None":
        assert infer_plan("default_claude_max_20x") == "Claude Max"
        assert infer_plan("claude_pro") == "Claude Pro"
        assert infer_plan("team_standard") == "Claude Team"
        assert infer_plan("enterprise") == "Claude Enterprise"
        assert infer_plan(None) is None


class TestCredentials:
    def test_parses_wrapped_document(self) -> "None":
        credentials = ClaudeOAuthCredentials.parse(
            '{"claudeAiOauth": {"accessToken": " tok ", "expiresAt": 1772625600000,'
            ' "rateLimitTier": "claude_pro"}}'
        )
        assert credentials.access_token == "tok"
        assert credentials.expires_at == datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
        assert credentials.rate_limit_tier == "claude_pro"
        assert credentials.is_expired(NOW) is True

    def test_missing_token_fails(self) -> "None":
        with pytest.raises(OAuthFailed):
            ClaudeOAuthCredentials.parse('{"claudeAiOauth": {}}')

    def test_invalid_json_fails(self) -> "None":
        with pytest.raises(OAuthFailed):
            ClaudeOAuthCredentials.parse("not json")


class TestParseCliUsage:
    def test_parses_usage_panel(self) -> "None":
        snapshot = parse_cli_usage(CLI_OUTPUT, now=NOW)

        assert snapshot.primary.used_percent == 13.0
        assert snapshot.primary.reset_description == "Resets 5pm (Europe/Berlin)"
        assert snapshot.secondary.used_percent == 22.0
        assert snapshot.tertiary.used_percent == 2.0

    def test_missing_session_fails(self) -> "None":
        with pytest.raises(ParseFailed):
            parse_cli_usage("Current week (all models)\n 10% used\n")


class TestParseCookieString:
    def test_bare_session_key(self) -> "None":
        assert parse_cookie_string(" sk-ant-sid01 ") == {"sessionKey": "sk-ant-sid01"}

    def test_cookie_header(self) -> "None":
        cookies = parse_cookie_string("sessionKey=abc; lastActiveOrg=org-1; junk")
        assert cookies == {"sessionKey": "abc", "lastActiveOrg": "org-1"}


class TestOAuthStrategy:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetches_usage(self) -> "None":
        route = respx.get(CLAUDE_OAUTH_USAGE_URL).mock(
            return_value=httpx.Response(200, json=USAGE_PAYLOAD)
        )

        async with httpx.AsyncClient() as client:
            context = make_context(client, credentials=claude_credentials())
            result = await ClaudeOAuthFetchStrategy().fetch(context)

        assert result.strategy_id == "claude.oauth"
        assert result.source_label == "oauth"
        assert result.usage.secondary.used_percent == 41.5
        assert result.usage.identity.login_method == "Claude Max"
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer sk-ant-oat-test"
        assert request.headers["anthropic-beta"] == "oauth-2025-04-20"

    @pytest.mark.asyncio
    @respx.mock
    async def test_unauthorized_is_oauth_failure(self) -> "None":
        respx.get(CLAUDE_OAUTH_USAGE_URL).mock(return_value=httpx.Response(401))

        async with httpx.AsyncClient() as client:
            context = make_context(client, credentials=claude_credentials())
            with pytest.raises(OAuthFailed):
                await ClaudeOAuthFetchStrategy().fetch(context)

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_fetch_failure(self) -> "None":
        respx.get(CLAUDE_OAUTH_USAGE_URL).mock(return_value=httpx.Response(503))

        async with httpx.AsyncClient() as client:
            context = make_context(client, credentials=claude_credentials())
            with pytest.raises(FetchFailed):
                await ClaudeOAuthFetchStrategy().fetch(context)

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_is_fetch_failure(self) -> "None":
        respx.get(CLAUDE_OAUTH_USAGE_URL).mock(side_effect=httpx.ConnectError("down"))

        async with httpx.AsyncClient() as client:
            context = make_context(client, credentials=claude_credentials())
            with pytest.raises(FetchFailed) as exc_info:
                await ClaudeOAuthFetchStrategy().fetch(context)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_availability_follows_credentials(self) -> "None":
        strategy = ClaudeOAuthFetchStrategy()
        async with httpx.AsyncClient() as client:
            assert await strategy.is_available(
                make_context(client, credentials=claude_credentials())
            )
            assert not await strategy.is_available(
                make_context(client, credentials=FakeSource(present=False))
            )
            assert not await strategy.is_available(make_context(client))

    @pytest.mark.asyncio
    async def test_fallback_only_in_auto_mode(self) -> "None":
        strategy = ClaudeOAuthFetchStrategy()
        async with httpx.AsyncClient() as client:
            auto = make_context(client)
            explicit = make_context(client, source_mode=SourceMode.OAUTH)

            assert strategy.should_fallback(OAuthFailed("expired"), auto) is True
            assert strategy.should_fallback(FetchFailed("down"), auto) is True
            assert strategy.should_fallback(ParseFailed("bad"), auto) is False
            assert strategy.should_fallback(OAuthFailed("expired"), explicit) is False


class TestWebStrategy:
    @pytest.mark.asyncio
    @respx.mock
    async def test_uses_org_from_cookie(self) -> "None":
        route = respx.get(f"{CLAUDE_WEB_BASE_URL}/api/organizations/org-1/usage").mock(
            return_value=httpx.Response(200, json=USAGE_PAYLOAD)
        )

        async with httpx.AsyncClient() as client:
            context = make_context(
                client, session_cookie="sessionKey=sk-1; lastActiveOrg=org-1"
            )
            result = await ClaudeWebFetchStrategy().fetch(context)

        assert result.source_label == "web"
        assert result.usage.primary.used_percent == 12.0
        assert "sessionKey=sk-1" in route.calls.last.request.headers["Cookie"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_looks_up_org(self) -> "None":
        respx.get(f"{CLAUDE_WEB_BASE_URL}/api/organizations").mock(
            return_value=httpx.Response(200, json=[{"uuid": "org-2"}])
        )
        respx.get(f"{CLAUDE_WEB_BASE_URL}/api/organizations/org-2/usage").mock(
            return_value=httpx.Response(200, json=USAGE_PAYLOAD)
        )

        async with httpx.AsyncClient() as client:
            context = make_context(client, session_cookie="sk-bare")
            result = await ClaudeWebFetchStrategy().fetch(context)

        assert result.usage.secondary.used_percent == 41.5

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_org_is_parse_failure(self) -> "None":
        respx.get(f"{CLAUDE_WEB_BASE_URL}/api/organizations").mock(
            return_value=httpx.Response(200, json=[])
        )

        async with httpx.AsyncClient() as client:
            context = make_context(client, session_cookie="sk-bare")
            with pytest.raises(ParseFailed):
                await ClaudeWebFetchStrategy().fetch(context)


class TestCLIStrategy:
    @pytest.mark.asyncio
    async def test_parses_cli_output(self) -> "None":
        async with httpx.AsyncClient() as client:
            context = make_context(client, cli=FakeSource(CLI_OUTPUT))
            result = await ClaudeCLIFetchStrategy().fetch(context)

        assert result.source_label == "cli"
        assert result.usage.primary.used_percent == 13.0
        assert result.usage.provider_cost is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_web_extras_add_cost(self) -> "None":
        payload = dict(
            USAGE_PAYLOAD,
            extra_usage={"is_enabled": True, "used_credits": 1250, "monthly_limit": 5000},
        )
        respx.get(f"{CLAUDE_WEB_BASE_URL}/api/organizations/org-1/usage").mock(
            return_value=httpx.Response(200, json=payload)
        )

        async with httpx.AsyncClient() as client:
            context = make_context(
                client,
                source_mode=SourceMode.CLI,
                session_cookie="sessionKey=sk; lastActiveOrg=org-1",
                cli=FakeSource(CLI_OUTPUT),
            )
            result = await ClaudeCLIFetchStrategy(use_web_extras=True).fetch(context)

        # windows come from the CLI, spend from the web
        assert result.usage.primary.used_percent == 13.0
        assert result.usage.provider_cost.used == 12.5
        assert result.usage.provider_cost.limit == 50.0

    @pytest.mark.asyncio
    @respx.mock
    async def test_web_extras_failure_is_ignored(self) -> "None":
        respx.get(f"{CLAUDE_WEB_BASE_URL}/api/organizations/org-1/usage").mock(
            return_value=httpx.Response(500)
        )

        async with httpx.AsyncClient() as client:
            context = make_context(
                client,
                session_cookie="sessionKey=sk; lastActiveOrg=org-1",
                cli=FakeSource(CLI_OUTPUT),
            )
            result = await ClaudeCLIFetchStrategy(use_web_extras=True).fetch(context)

        assert result.usage.primary.used_percent == 13.0
        assert result.usage.provider_cost is None

    @pytest.mark.asyncio
    async def test_never_falls_back(self) -> "None":
        async with httpx.AsyncClient() as client:
            context = make_context(client)
            assert ClaudeCLIFetchStrategy().should_fallback(FetchFailed("x"), context) is False
