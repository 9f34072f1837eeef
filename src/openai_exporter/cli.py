import argparse

from openai_exporter.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="openai-exporter",
        description="Prometheus exporter for OpenAI organization usage and costs",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9185",
        help="Address to listen on (default: :9185)",
    )
    parser.add_argument(
        "--scrape.interval",
        dest="scrape_interval",
        type=int,
        default=60,
        help="Usage scrape interval in seconds (default: 60)",
    )
    parser.add_argument(
        "--query.offset",
        dest="query_offset",
        type=int,
        default=900,
        help="How far back each usage query reaches, in seconds (default: 900)",
    )
    parser.add_argument(
        "--cost.interval",
        dest="cost_interval",
        type=int,
        default=3600,
        help="Cost scrape interval in seconds (default: 3600)",
    )
    parser.add_argument(
        "--usage.skip-open-buckets",
        dest="skip_open_buckets",
        action="store_true",
        help="Only count usage buckets once they have ended",
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
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.scrape_interval = args.scrape_interval
    config.query_offset = args.query_offset
    config.cost_interval = args.cost_interval
    config.track_open_buckets = not args.skip_open_buckets
    config.log_level = args.log_level
    config.log_format = args.log_format
    return config
