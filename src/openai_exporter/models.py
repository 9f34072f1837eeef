from collections.abc import Mapping
from dataclasses import dataclass, field

from openai_exporter.exceptions import UsageDecodeError

UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """
    UsageRecord is one grouped result inside a usage bucket.
    Dimension values are already normalized to strings.
    """

    # resource type, e.g. "completions"
    operation: "str"
    model: "str"
    project_id: "str"
    user_id: "str"
    api_key_id: "str"
    batch: "str"
    # unix timestamp marking the start of the bucket (inclusive)
    bucket_start: "int"
    # unix timestamp marking the end of the bucket (exclusive)
    bucket_end: "int"
    # sub-measure name -> cumulative value for the bucket
    measures: "Mapping[str, float]" = field(default_factory=dict, hash=False)

    def is_closed(self, now: "int") -> "bool":
        return self.bucket_end <= now

    def dimension_labels(self) -> "dict[str, str]":
        return {
            "model": self.model,
            "operation": self.operation,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "api_key_id": self.api_key_id,
            "batch": self.batch,
        }


@dataclass(frozen=True, slots=True)
class UsageBucket:
    start: "int"
    end: "int"
    records: "tuple[UsageRecord, ...]" = ()


@dataclass(frozen=True, slots=True)
class CostLineItem:
    """
    CostLineItem is a single day-granularity cost result
    for a project and line item.
    """

    # YYYY-MM-DD of the bucket start in UTC
    date: "str"
    project_id: "str"
    line_item: "str"
    organization_id: "str"
    currency: "str"
    amount: "float"
    bucket_start: "int"
    bucket_end: "int"


def normalize_dimension(value: "object") -> "str":
    """
    maps a missing/null dimension to "unknown" so it stays a
    stable label value instead of colliding with absent data.
    """
    if value is None:
        return UNKNOWN
    return str(value)


def normalize_batch(value: "object") -> "str":
    """
    the batch field is sometimes a bool, sometimes a string and
    sometimes null. Resolve it once here into a label value.
    """
    if value is None:
        return UNKNOWN
    # bool first: it's the only non-string type upstream sends
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    raise UsageDecodeError(f"unexpected type for batch field: {type(value).__name__}")


def bucket_key(record: "UsageRecord", measure: "str") -> "str":
    """
    constructs the deduplication key for one sub-measure of a record.
    """
    return (
        f"{record.operation}|{record.bucket_start}|{record.project_id}"
        f"|{record.user_id}|{record.api_key_id}|{record.model}"
        f"|{record.batch}|{measure}"
    )
