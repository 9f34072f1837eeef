import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from openai_exporter.cli import parse_args
from openai_exporter.client import OpenAIUsageClient
from openai_exporter.collector import Collector
from openai_exporter.exceptions import ConfigError
from openai_exporter.ledger import BucketLedger
from openai_exporter.logging import setup_logging
from openai_exporter.metrics import MetricsUpdater
from openai_exporter.names import ProjectNameResolver

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9185' or '0.0.0.0:9185'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_format)

    try:
        config.validate()
    except ConfigError as err:
        raise SystemExit(str(err)) from err

    metrics = MetricsUpdater()

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info(
        "metrics_server_started",
        host=host,
        port=port,
        scrape_interval=config.scrape_interval,
        query_offset=config.query_offset,
        track_open_buckets=config.track_open_buckets,
    )

    async def _run() -> "None":
        # the client and collector own asyncio primitives, so build
        # them inside the running loop
        client = OpenAIUsageClient(api_key=config.api_key, org_id=config.org_id)
        collector = Collector(
            client,
            BucketLedger(track_open_buckets=config.track_open_buckets),
            ProjectNameResolver(client),
            metrics,
            scrape_interval_seconds=config.scrape_interval,
            query_offset_seconds=config.query_offset,
            cost_interval_seconds=config.cost_interval,
            org_id=config.org_id,
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
