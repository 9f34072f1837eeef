import httpx
import pytest
import respx

from openai_exporter.client import (
    OPENAI_BASE_URL,
    RESOURCE_TYPES,
    OpenAIUsageClient,
    ResourceType,
)
from openai_exporter.exceptions import UsageAPIError, UsageDecodeError
from openai_exporter.models import UsageBucket

COMPLETIONS: "ResourceType" = RESOURCE_TYPES[0]
COMPLETIONS_URL = f"{OPENAI_BASE_URL}/usage/completions"


async def _collect(
    client: "OpenAIUsageClient",
    start_time: "int" = 1000,
    end_time: "int" = 1120,
) -> "list[UsageBucket]":
    return [b async for b in client.fetch(COMPLETIONS, start_time, end_time)]


def _page(
    start: "int",
    results: "list[dict]",
    has_more: "bool" = False,
    next_page: "str | None" = None,
) -> "httpx.Response":
    return httpx.Response(
        200,
        json={
            "object": "page",
            "data": [
                {
                    "object": "bucket",
                    "start_time": start,
                    "end_time": start + 60,
                    "results": results,
                }
            ],
            "has_more": has_more,
            "next_page": next_page,
        },
    )


class TestOpenAIUsageClientFetch:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetches_and_parses_usage(self) -> "None":
        route = respx.get(COMPLETIONS_URL).mock(
            return_value=_page(
                1000,
                [
                    {
                        "project_id": "proj-1",
                        "user_id": "user-1",
                        "api_key_id": "key-1",
                        "model": "gpt-4o",
                        "batch": False,
                        "input_tokens": 100,
                        "output_tokens": 50,
                        "input_cached_tokens": 20,
                        "input_audio_tokens": 0,
                        "output_audio_tokens": 0,
                        "num_model_requests": 2,
                    }
                ],
            )
        )

        client = OpenAIUsageClient(api_key="sk-test", org_id="org-1")
        buckets = await _collect(client, 1000, 1060)

        assert len(buckets) == 1
        assert (buckets[0].start, buckets[0].end) == (1000, 1060)
        record = buckets[0].records[0]
        assert record.operation == "completions"
        assert record.model == "gpt-4o"
        assert record.project_id == "proj-1"
        assert record.user_id == "user-1"
        assert record.api_key_id == "key-1"
        assert record.batch == "false"
        assert record.measures["input"] == 100.0
        assert record.measures["output"] == 50.0
        assert record.measures["input_cached"] == 20.0
        assert record.measures["requests"] == 2.0

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["OpenAI-Organization"] == "org-1"
        assert request.url.params["start_time"] == "1000"
        assert request.url.params["end_time"] == "1060"
        assert request.url.params["bucket_width"] == "1m"
        assert request.url.params["group_by"] == COMPLETIONS.group_by

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_dimensions_become_unknown(self) -> "None":
        respx.get(COMPLETIONS_URL).mock(
            return_value=_page(
                1000,
                [
                    {
                        "project_id": None,
                        "user_id": None,
                        "api_key_id": None,
                        "model": None,
                        "batch": None,
                        "input_tokens": 7,
                    }
                ],
            )
        )

        client = OpenAIUsageClient(api_key="sk-test")
        record = (await _collect(client))[0].records[0]

        assert record.project_id == "unknown"
        assert record.user_id == "unknown"
        assert record.api_key_id == "unknown"
        assert record.model == "unknown"
        assert record.batch == "unknown"
        # absent sub-measures read as zero
        assert record.measures["output"] == 0.0

    @pytest.mark.asyncio
    @respx.mock
    async def test_handles_pagination(self) -> "None":
        route = respx.get(COMPLETIONS_URL).mock(
            side_effect=[
                _page(1000, [{"model": "gpt-4o", "input_tokens": 10}], True, "page2"),
                _page(1060, [{"model": "gpt-4o", "input_tokens": 20}]),
            ]
        )

        client = OpenAIUsageClient(api_key="sk-test")
        buckets = await _collect(client)

        assert [b.start for b in buckets] == [1000, 1060]
        assert buckets[0].records[0].measures["input"] == 10.0
        assert buckets[1].records[0].measures["input"] == 20.0
        assert route.call_count == 2
        assert "page" not in route.calls[0].request.url.params
        assert route.calls[1].request.url.params["page"] == "page2"

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_is_raised(self) -> "None":
        respx.get(COMPLETIONS_URL).mock(
            return_value=httpx.Response(500, text="boom")
        )

        client = OpenAIUsageClient(api_key="sk-test")
        with pytest.raises(UsageAPIError) as exc_info:
            await _collect(client)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_is_raised(self) -> "None":
        respx.get(COMPLETIONS_URL).mock(side_effect=httpx.ConnectTimeout)

        client = OpenAIUsageClient(api_key="sk-test")
        with pytest.raises(UsageAPIError):
            await _collect(client)

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json_is_a_decode_error(self) -> "None":
        respx.get(COMPLETIONS_URL).mock(
            return_value=httpx.Response(200, content=b"invalid json")
        )

        client = OpenAIUsageClient(api_key="sk-test")
        with pytest.raises(UsageDecodeError):
            await _collect(client)

    @pytest.mark.asyncio
    @respx.mock
    async def test_bad_batch_type_is_a_decode_error(self) -> "None":
        respx.get(COMPLETIONS_URL).mock(
            return_value=_page(1000, [{"model": "gpt-4o", "batch": 123}])
        )

        client = OpenAIUsageClient(api_key="sk-test")
        with pytest.raises(UsageDecodeError):
            await _collect(client)

    @pytest.mark.asyncio
    @respx.mock
    async def test_buckets_before_failing_page_are_yielded(self) -> "None":
        respx.get(COMPLETIONS_URL).mock(
            side_effect=[
                _page(1000, [{"model": "gpt-4o", "input_tokens": 10}], True, "page2"),
                httpx.Response(200, content=b"invalid json"),
            ]
        )

        client = OpenAIUsageClient(api_key="sk-test")
        seen: "list[UsageBucket]" = []
        with pytest.raises(UsageDecodeError):
            async for bucket in client.fetch(COMPLETIONS, 1000, 1120):
                seen.append(bucket)

        assert [b.start for b in seen] == [1000]


class TestOpenAIUsageClientFetchCosts:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetches_and_parses_costs(self) -> "None":
        route = respx.get(f"{OPENAI_BASE_URL}/costs").mock(
            return_value=httpx.Response(
                200,
                json={
                    "object": "page",
                    "data": [
                        {
                            "object": "bucket",
                            "start_time": 1705276800,
                            "end_time": 1705363200,
                            "results": [
                                {
                                    "object": "organization.costs.result",
                                    "project_id": "proj-1",
                                    "line_item": "gpt-4o, input",
                                    "organization_id": "org-1",
                                    "amount": {
                                        "value": 0.05,
                                        "currency": "usd",
                                    },
                                }
                            ],
                        }
                    ],
                    "has_more": False,
                },
            )
        )

        client = OpenAIUsageClient(api_key="sk-test")
        items = await client.fetch_costs(1705276800, 1705363200)

        assert len(items) == 1
        item = items[0]
        assert item.date == "2024-01-15"
        assert item.project_id == "proj-1"
        assert item.line_item == "gpt-4o, input"
        assert item.organization_id == "org-1"
        assert item.currency == "usd"
        assert item.amount == 0.05
        assert route.calls.last.request.url.params["bucket_width"] == "1d"

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json_is_a_decode_error(self) -> "None":
        respx.get(f"{OPENAI_BASE_URL}/costs").mock(
            return_value=httpx.Response(200, content=b"invalid json")
        )

        client = OpenAIUsageClient(api_key="sk-test")
        with pytest.raises(UsageDecodeError):
            await client.fetch_costs(1000, 2000)
