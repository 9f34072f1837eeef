from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
import structlog

from openai_exporter.exceptions import UsageAPIError, UsageDecodeError
from openai_exporter.models import (
    CostLineItem,
    UsageBucket,
    UsageRecord,
    normalize_batch,
    normalize_dimension,
)

logger = structlog.get_logger()

OPENAI_BASE_URL = "https://api.openai.com/v1/organization"

BUCKET_WIDTH_SECONDS = 60

_USAGE_PAGE_LIMIT = 1440
_COST_PAGE_LIMIT = 180

_TOKEN_MEASURES: "dict[str, str]" = {
    "input_tokens": "input",
    "output_tokens": "output",
    "input_cached_tokens": "input_cached",
    "input_audio_tokens": "input_audio",
    "output_audio_tokens": "output_audio",
}
_EMBEDDING_MEASURES: "dict[str, str]" = {"input_tokens": "input"}
_REQUESTS: "dict[str, str]" = {"num_model_requests": "requests"}


@dataclass(frozen=True)
class ResourceType:
    """
    ResourceType describes one usage endpoint: its URL path, the
    dimensions results are grouped by and the upstream fields that
    become sub-measures.
    """

    name: "str"
    group_by: "str"
    # upstream field -> sub-measure name
    measures: "Mapping[str, str]" = field(default_factory=dict)


RESOURCE_TYPES: "tuple[ResourceType, ...]" = (
    ResourceType(
        "completions",
        "project_id,user_id,api_key_id,model,batch",
        {**_TOKEN_MEASURES, **_REQUESTS},
    ),
    ResourceType(
        "embeddings",
        "project_id,user_id,api_key_id,model",
        {**_EMBEDDING_MEASURES, **_REQUESTS},
    ),
    ResourceType(
        "moderations",
        "project_id,user_id,api_key_id,model",
        {**_EMBEDDING_MEASURES, **_REQUESTS},
    ),
    ResourceType("images", "project_id,user_id,api_key_id,model", _REQUESTS),
    ResourceType("audio_speeches", "project_id,user_id,api_key_id,model", _REQUESTS),
    ResourceType(
        "audio_transcriptions", "project_id,user_id,api_key_id,model", _REQUESTS
    ),
)


def _utc_date(ts: "int") -> "str":
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class OpenAIUsageClient:
    """
    OpenAIUsageClient talks to the OpenAI organization usage and
    costs APIs. It handles pagination and decoding but keeps no
    state between calls and never retries: errors are raised to
    the caller.
    """

    def __init__(
        self,
        api_key: "str",
        org_id: "str" = "",
        base_url: "str" = OPENAI_BASE_URL,
        timeout: "float" = 10.0,
    ) -> "None":
        headers: "dict[str, str]" = {"Authorization": f"Bearer {api_key}"}
        if org_id:
            headers["OpenAI-Organization"] = org_id
        self._base_url = base_url.rstrip("/")
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
        )

    @property
    def base_url(self) -> "str":
        return self._base_url

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def get_json(
        self,
        url: "str",
        params: "Mapping[str, str | int] | None" = None,
    ) -> "dict":
        """
        performs a GET and decodes the JSON object body.
        """
        try:
            resp = await self._client.get(url, params=params)
        except httpx.HTTPError as err:
            raise UsageAPIError(f"request to {url} failed: {err}") from err

        if not resp.is_success:
            raise UsageAPIError(
                f"{url} returned HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as err:
            raise UsageDecodeError(f"invalid JSON from {url}: {err}") from err

        if not isinstance(data, dict):
            raise UsageDecodeError(f"expected a JSON object from {url}")
        return data

    async def _pages(
        self,
        url: "str",
        params: "dict[str, str | int]",
    ) -> "AsyncIterator[list[dict]]":
        """
        yields the `data` array of every page until upstream
        reports no more pages.
        """
        next_page = ""

        # loop instead of recursion to follow the page cursor
        while True:
            page_params = dict(params)
            if next_page:
                page_params["page"] = next_page

            logger.debug("openai_fetch_page", url=url, page=next_page or None)
            data = await self.get_json(url, page_params)

            buckets = data.get("data")
            if not isinstance(buckets, list):
                raise UsageDecodeError(f"missing data array in response from {url}")
            yield buckets

            if not data.get("has_more"):
                break

            next_page = data.get("next_page") or ""
            if not next_page:
                raise UsageDecodeError(f"has_more set without next_page from {url}")

    async def fetch(
        self,
        resource_type: "ResourceType",
        start_time: "int",
        end_time: "int",
    ) -> "AsyncIterator[UsageBucket]":
        """
        yields the usage buckets for resource_type covering
        [start_time, end_time) in the order upstream returns them.
        Each page is decoded completely before its buckets are yielded.
        """
        url = f"{self._base_url}/usage/{resource_type.name}"
        params: "dict[str, str | int]" = {
            "start_time": start_time,
            "end_time": end_time,
            "bucket_width": "1m",
            "limit": _USAGE_PAGE_LIMIT,
            "group_by": resource_type.group_by,
        }

        bucket_count = 0
        async for page in self._pages(url, params):
            buckets = [self._decode_usage_bucket(resource_type, b) for b in page]
            for bucket in buckets:
                bucket_count += 1
                yield bucket

        logger.debug(
            "openai_usage_endpoint_done",
            endpoint=resource_type.name,
            bucket_count=bucket_count,
        )

    @staticmethod
    def _decode_usage_bucket(
        resource_type: "ResourceType",
        raw: "dict",
    ) -> "UsageBucket":
        try:
            start = int(raw["start_time"])
            end = int(raw["end_time"])
            records = tuple(
                UsageRecord(
                    operation=resource_type.name,
                    model=normalize_dimension(result.get("model")),
                    project_id=normalize_dimension(result.get("project_id")),
                    user_id=normalize_dimension(result.get("user_id")),
                    api_key_id=normalize_dimension(result.get("api_key_id")),
                    batch=normalize_batch(result.get("batch")),
                    bucket_start=start,
                    bucket_end=end,
                    measures={
                        measure: float(result.get(upstream) or 0)
                        for upstream, measure in resource_type.measures.items()
                    },
                )
                for result in raw.get("results", [])
            )
        except (KeyError, TypeError, ValueError, AttributeError) as err:
            raise UsageDecodeError(
                f"malformed {resource_type.name} usage bucket: {err}"
            ) from err

        return UsageBucket(start=start, end=end, records=records)

    async def fetch_costs(
        self,
        start_time: "int",
        end_time: "int",
    ) -> "list[CostLineItem]":
        """
        fetches day-granularity cost line items per project.
        """
        url = f"{self._base_url}/costs"
        params: "dict[str, str | int]" = {
            "start_time": start_time,
            "end_time": end_time,
            "bucket_width": "1d",
            "limit": _COST_PAGE_LIMIT,
            "group_by": "project_id,line_item",
        }

        items: "list[CostLineItem]" = []
        async for page in self._pages(url, params):
            for bucket in page:
                items.extend(self._decode_cost_bucket(bucket))

        logger.debug("openai_costs_done", record_count=len(items))
        return items

    @staticmethod
    def _decode_cost_bucket(raw: "dict") -> "list[CostLineItem]":
        try:
            start = int(raw["start_time"])
            end = int(raw["end_time"])
            items: "list[CostLineItem]" = []
            for result in raw.get("results", []):
                amount = result.get("amount") or {}
                items.append(
                    CostLineItem(
                        date=_utc_date(start),
                        project_id=normalize_dimension(result.get("project_id")),
                        line_item=normalize_dimension(result.get("line_item")),
                        organization_id=normalize_dimension(
                            result.get("organization_id")
                        ),
                        currency=normalize_dimension(amount.get("currency")),
                        amount=float(amount.get("value") or 0.0),
                        bucket_start=start,
                        bucket_end=end,
                    )
                )
        except (KeyError, TypeError, ValueError, AttributeError) as err:
            raise UsageDecodeError(f"malformed cost bucket: {err}") from err

        return items
