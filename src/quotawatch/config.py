import os
from dataclasses import dataclass, field

from quotawatch.history.store import DEFAULT_KEEP_WEEKS
from quotawatch.provider.base import SourceMode

SUPPORTED_PROVIDERS = ("claude", "codex")


def _env_flag(name: "str") -> "bool":
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # refresh interval in seconds
    scrape_interval: "int" = 120
    log_level: "str" = "info"

    source_mode: "SourceMode" = SourceMode.AUTO
    providers: "list[str]" = field(default_factory=lambda: ["claude"])
    # raw cookie header or bare sessionKey for claude.ai
    claude_session_key: "str" = ""
    claude_cli_path: "str" = "claude"
    web_extras: "bool" = False

    # empty means the platform's application support directory
    history_dir: "str" = ""
    history_keep_weeks: "int" = DEFAULT_KEEP_WEEKS

    @classmethod
    def from_env(cls) -> "Config":
        providers = [
            p.strip().lower()
            for p in os.environ.get("QUOTAWATCH_PROVIDERS", "claude").split(",")
            if p.strip()
        ]
        return cls(
            source_mode=SourceMode(
                os.environ.get("QUOTAWATCH_SOURCE", SourceMode.AUTO.value).lower()
            ),
            providers=providers,
            claude_session_key=os.environ.get("CLAUDE_SESSION_KEY", ""),
            claude_cli_path=os.environ.get("CLAUDE_CLI_PATH", "claude"),
            web_extras=_env_flag("QUOTAWATCH_WEB_EXTRAS"),
            history_dir=os.environ.get("QUOTAWATCH_HISTORY_DIR", ""),
            history_keep_weeks=int(
                os.environ.get("QUOTAWATCH_HISTORY_WEEKS", DEFAULT_KEEP_WEEKS)
            ),
        )

    @property
    def enabled_providers(self) -> "list[str]":
        return [p for p in self.providers if p in SUPPORTED_PROVIDERS]
