import asyncio
import dataclasses
import time
from collections.abc import Sequence
from datetime import datetime, timezone

import structlog

from openai_exporter.client import (
    BUCKET_WIDTH_SECONDS,
    RESOURCE_TYPES,
    OpenAIUsageClient,
    ResourceType,
)
from openai_exporter.ledger import BucketLedger
from openai_exporter.metrics import MetricsUpdater
from openai_exporter.models import UNKNOWN, CostLineItem, UsageRecord, bucket_key
from openai_exporter.names import ProjectNameResolver

logger = structlog.get_logger()

# ledger entries are kept this long past the start of the query window
_EVICTION_GRACE_SECONDS = 3600

_DAY_SECONDS = 86400

# resource label used for the cost stage in self-metrics
COSTS_RESOURCE = "costs"


def day_bounds_utc(dt: "datetime") -> "tuple[int, int]":
    """
    returns the unix timestamps of the start of the UTC day
    containing dt and of the start of the following day.
    """
    day = dt.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    start = int(day.timestamp())
    return start, start + _DAY_SECONDS


class Collector:
    """
    Collector drives two independent periodic loops:

     - the usage loop fetches every resource type concurrently for
     a lookback window, runs each sub-measure through the bucket
     ledger and publishes only the increments;
     - the cost loop fetches day-granularity costs on a much longer
     interval and overwrites the daily cost gauge.

    Each loop finishes a cycle before sleeping, so an overrunning
    cycle delays the next one instead of overlapping it. Both loops
    stop between cycles once stop() is called.
    """

    def __init__(
        self,
        client: "OpenAIUsageClient",
        ledger: "BucketLedger",
        resolver: "ProjectNameResolver",
        metrics: "MetricsUpdater",
        resource_types: "Sequence[ResourceType]" = RESOURCE_TYPES,
        scrape_interval_seconds: "int" = 60,
        query_offset_seconds: "int" = 900,
        cost_interval_seconds: "int" = 3600,
        org_id: "str" = "",
    ) -> "None":
        self._client = client
        self._ledger = ledger
        self._resolver = resolver
        self._metrics = metrics
        self._resource_types = tuple(resource_types)
        self._interval = scrape_interval_seconds
        self._query_offset = query_offset_seconds
        self._cost_interval = cost_interval_seconds
        self._org_id = org_id
        # end of the last completed usage cycle
        self._cursor: "int | None" = None
        self._stop_event: "asyncio.Event" = asyncio.Event()

    @property
    def cursor(self) -> "int | None":
        return self._cursor

    def stop(self) -> "None":
        """
        signals both loops to stop after their current cycle.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes the client session.
        """
        await self._client.close()

    async def run(self) -> "None":
        """
        runs the usage and cost loops until stop() is called.
        """
        await asyncio.gather(self._usage_loop(), self._cost_loop())

    async def _usage_loop(self) -> "None":
        while not self._stop_event.is_set():
            await self.collect_usage(int(time.time()))
            await self._wait(self._interval)

    async def _cost_loop(self) -> "None":
        while not self._stop_event.is_set():
            await self.collect_costs(int(time.time()))
            await self._wait(self._cost_interval)

    async def _wait(self, timeout: "int") -> "None":
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except TimeoutError:
            pass

    def window_start(self, now: "int") -> "int":
        """
        lower bound of the next usage query. Never later than the end
        of the last completed cycle so no interval is skipped, and
        aligned to the bucket width so bucket starts stay stable
        across cycles.
        """
        start = now - self._query_offset
        if self._cursor is not None:
            start = min(start, self._cursor)
        return start - start % BUCKET_WIDTH_SECONDS

    async def collect_usage(self, now: "int") -> "None":
        """
        runs one usage cycle over [window_start(now), now). A bucket
        counts as closed when its end is at or before now.
        """
        start_time = self.window_start(now)
        logger.info("collection_cycle_start", start_time=start_time, end_time=now)

        tasks = [
            self._collect_resource(resource_type, start_time, now, now)
            for resource_type in self._resource_types
        ]
        await asyncio.gather(*tasks)

        self._cursor = now

        # buckets that old can't show up in a later window any more
        cutoff = start_time - _EVICTION_GRACE_SECONDS
        evicted = self._ledger.evict_before(cutoff)
        if evicted:
            logger.debug("ledger_evicted", count=evicted, cutoff=cutoff)
        self._metrics.set_ledger_entries(len(self._ledger))

        logger.info("collection_cycle_end")

    async def _collect_resource(
        self,
        resource_type: "ResourceType",
        start_time: "int",
        end_time: "int",
        now: "int",
    ) -> "None":
        cycle_start = time.monotonic()
        had_error = False

        try:
            async for bucket in self._client.fetch(resource_type, start_time, end_time):
                for record in bucket.records:
                    await self._apply_record(record, now)

        except Exception:
            logger.exception("usage_fetch_error", resource=resource_type.name)
            self._metrics.inc_scrape_error(resource_type.name, "usage")
            had_error = True

        duration = time.monotonic() - cycle_start
        self._metrics.observe_scrape_duration(resource_type.name, duration)

        if not had_error:
            self._metrics.set_last_scrape_success(resource_type.name, time.time())

    async def _apply_record(self, record: "UsageRecord", now: "int") -> "None":
        closed = record.is_closed(now)
        # skip time frames that haven't completed yet
        if not closed and not self._ledger.track_open_buckets:
            return

        labels = record.dimension_labels()
        labels["project_name"] = await self._resolver.resolve(record.project_id)

        for measure, value in record.measures.items():
            increment = self._ledger.observe(
                bucket_key(record, measure),
                value,
                record.bucket_start,
                closed,
            )
            if increment > 0:
                self._metrics.inc_usage(labels, measure, increment)

    async def collect_costs(self, now: "int") -> "None":
        """
        fetches costs for yesterday and today (UTC) and overwrites
        the daily cost gauge. Yesterday is included because upstream
        keeps revising it after midnight.
        """
        today_start, today_end = day_bounds_utc(
            datetime.fromtimestamp(now, tz=timezone.utc)
        )
        cycle_start = time.monotonic()
        had_error = False

        try:
            items = await self._client.fetch_costs(
                today_start - _DAY_SECONDS, today_end
            )
            for item in items:
                project_name = await self._resolver.resolve(item.project_id)
                self._metrics.set_daily_cost(self._with_org(item), project_name)

        except Exception:
            logger.exception("cost_fetch_error")
            self._metrics.inc_scrape_error(COSTS_RESOURCE, "cost")
            had_error = True

        duration = time.monotonic() - cycle_start
        self._metrics.observe_scrape_duration(COSTS_RESOURCE, duration)

        if not had_error:
            self._metrics.set_last_scrape_success(COSTS_RESOURCE, time.time())

    def _with_org(self, item: "CostLineItem") -> "CostLineItem":
        if item.organization_id == UNKNOWN and self._org_id:
            return dataclasses.replace(item, organization_id=self._org_id)
        return item
