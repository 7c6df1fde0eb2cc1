import argparse

from keymeter.config import Config


def parse_args(argv: "list[str] | None" = None) -> "tuple[Config, bool]":
    """
    returns the config plus whether to run a single cron sync and exit
    instead of serving HTTP. Flags that are not given keep the value
    from the environment.
    """
    config = Config.from_env()

    parser = argparse.ArgumentParser(
        prog="keymeter",
        description="LLM API key usage and cost sync service",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":8000",
        help="Address to listen on (default: :8000)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default=config.log_format,
        choices=["console", "json"],
        help="Log output format (default: $LOG_FORMAT or console)",
    )
    parser.add_argument(
        "--sync.interval",
        dest="sync_interval_seconds",
        type=int,
        default=config.sync_interval_seconds,
        help="Skip accounts verified within this many seconds (default: 3600)",
    )
    parser.add_argument(
        "--sync.max-accounts",
        dest="max_accounts_per_run",
        type=int,
        default=config.max_accounts_per_run,
        help="Accounts synced per cron run (default: 3)",
    )
    parser.add_argument(
        "--cron.once",
        dest="cron_once",
        action="store_true",
        help="Run one account sync pass and exit",
    )

    args = parser.parse_args(argv)
    config.listen_address = args.listen_address
    config.log_level = args.log_level
    config.log_format = args.log_format
    config.sync_interval_seconds = args.sync_interval_seconds
    config.max_accounts_per_run = args.max_accounts_per_run
    return config, args.cron_once
