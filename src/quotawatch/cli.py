import argparse

from quotawatch.config import Config
from quotawatch.provider.base import SourceMode


def parse_args(argv: "list[str] | None" = None) -> "Config":
    config = Config.from_env()

    parser = argparse.ArgumentParser(
        prog="quotawatch",
        description="AI assistant quota tracker and Prometheus exporter",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=config.listen_address,
        help=f"Address to listen on (default: {config.listen_address})",
    )
    parser.add_argument(
        "--scrape.interval",
        dest="scrape_interval",
        type=int,
        default=config.scrape_interval,
        help=f"Refresh interval in seconds (default: {config.scrape_interval})",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default=config.log_level,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--source",
        dest="source_mode",
        default=config.source_mode.value,
        choices=[m.value for m in SourceMode],
        help="Usage data source (default: auto)",
    )
    parser.add_argument(
        "--history.dir",
        dest="history_dir",
        default=config.history_dir,
        help="Directory for weekly usage history files",
    )
    parser.add_argument(
        "--history.keep-weeks",
        dest="history_keep_weeks",
        type=int,
        default=config.history_keep_weeks,
        help=f"ISO weeks of history to keep (default: {config.history_keep_weeks})",
    )
    parser.add_argument(
        "--web-extras",
        dest="web_extras",
        action=argparse.BooleanOptionalAction,
        default=config.web_extras,
        help="Augment CLI usage with spend data from the web session",
    )

    args = parser.parse_args(argv)
    config.listen_address = args.listen_address
    config.scrape_interval = args.scrape_interval
    config.log_level = args.log_level
    config.source_mode = SourceMode(args.source_mode)
    config.history_dir = args.history_dir
    config.history_keep_weeks = args.history_keep_weeks
    config.web_extras = args.web_extras
    return config
