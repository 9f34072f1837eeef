from collections.abc import Mapping

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from openai_exporter.models import CostLineItem

USAGE_LABELS: "list[str]" = [
    "model",
    "operation",
    "project_id",
    "project_name",
    "user_id",
    "api_key_id",
    "batch",
]

COST_LABELS: "list[str]" = [
    "date",
    "project_id",
    "project_name",
    "line_item",
    "organization_id",
    "currency",
]

# sub-measure that is published as a request count instead of tokens
REQUESTS_MEASURE = "requests"


def merge_labels(base: "Mapping[str, str]", key: "str", value: "str") -> "dict[str, str]":
    """
    returns a copy of base with one extra label, leaving base untouched.
    """
    merged = dict(base)
    merged[key] = value
    return merged


class MetricsUpdater:
    """
    applies usage increments and cost values to Prometheus
    metrics, and records the exporter's own scrape health.

     - <namespace>_tokens_total: counter per token sub-measure,
     labeled by the usage dimensions plus token_type.
     - <namespace>_requests_total: counter of model requests,
     labeled by the usage dimensions.
     - <namespace>_daily_cost: gauge of cost-to-date per day,
     project and line item. Overwritten on every cost scrape.
    """

    def __init__(
        self,
        registry: "CollectorRegistry" = REGISTRY,
        namespace: "str" = "openai_api",
    ) -> "None":
        self._tokens: "Counter" = Counter(
            f"{namespace}_tokens_total",
            "Total tokens used, by token type",
            USAGE_LABELS + ["token_type"],
            registry=registry,
        )
        self._requests: "Counter" = Counter(
            f"{namespace}_requests_total",
            "Total number of model requests",
            USAGE_LABELS,
            registry=registry,
        )
        self._daily_cost: "Gauge" = Gauge(
            f"{namespace}_daily_cost",
            "Cost to date for the day, per project and line item",
            COST_LABELS,
            registry=registry,
        )
        self._scrape_duration: "Histogram" = Histogram(
            "openai_exporter_scrape_duration_seconds",
            "Duration of scrape cycles per resource type",
            ["resource"],
            registry=registry,
        )
        self._scrape_errors: "Counter" = Counter(
            "openai_exporter_scrape_errors_total",
            "Total number of scrape errors by resource type and stage",
            ["resource", "stage"],
            registry=registry,
        )
        self._last_scrape_success: "Gauge" = Gauge(
            "openai_exporter_last_scrape_success_timestamp_seconds",
            "Unix timestamp of last successful scrape per resource type",
            ["resource"],
            registry=registry,
        )
        self._ledger_entries: "Gauge" = Gauge(
            "openai_exporter_ledger_entries",
            "Number of usage buckets currently tracked for deduplication",
            registry=registry,
        )

    def inc_usage(
        self,
        labels: "Mapping[str, str]",
        measure: "str",
        amount: "float",
    ) -> "None":
        """
        adds amount to the series for one sub-measure. labels
        must carry every name in USAGE_LABELS.
        """
        if measure == REQUESTS_MEASURE:
            self._requests.labels(**labels).inc(amount)
            return

        self._tokens.labels(**merge_labels(labels, "token_type", measure)).inc(amount)

    def set_daily_cost(self, item: "CostLineItem", project_name: "str") -> "None":
        self._daily_cost.labels(
            date=item.date,
            project_id=item.project_id,
            project_name=project_name,
            line_item=item.line_item,
            organization_id=item.organization_id,
            currency=item.currency,
        ).set(item.amount)

    def observe_scrape_duration(
        self, resource: "str", duration_seconds: "float"
    ) -> "None":
        self._scrape_duration.labels(resource=resource).observe(duration_seconds)

    def inc_scrape_error(self, resource: "str", stage: "str") -> "None":
        self._scrape_errors.labels(resource=resource, stage=stage).inc()

    def set_last_scrape_success(self, resource: "str", timestamp: "float") -> "None":
        self._last_scrape_success.labels(resource=resource).set(timestamp)

    def set_ledger_entries(self, count: "int") -> "None":
        self._ledger_entries.set(count)
