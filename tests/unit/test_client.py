"""
Upstream client tests against httpx.MockTransport
"""

import httpx
import pytest
from datetime import datetime

from core.exceptions import (
    APIClientError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ServerError,
    ThrottledError,
    UnauthorizedError,
)
from models.base import EntityType
from sync.client import UpstreamClient
from sync.rate_limiter import TokenBucket


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_client(tenant, handler, sleep=None, limiter=None):
    return UpstreamClient(
        tenant,
        limiter=limiter or TokenBucket(100, 100.0),
        transport=httpx.MockTransport(handler),
        sleep=sleep or RecordingSleep(),
    )


@pytest.mark.asyncio
async def test_first_page_sends_window_and_auth(tenant_config):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"orders": [{"id": 1}, {"id": 2}]})

    async with make_client(tenant_config, handler) as client:
        page = await client.fetch_page(EntityType.ORDERS, window_start=datetime(2024, 1, 15, 9, 0))

    assert [item["id"] for item in page.items] == [1, 2]
    assert page.done

    request = seen[0]
    assert request.url.path == "/admin/api/2024-01/orders.json"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_test_token"
    assert request.url.params["limit"] == "50"
    assert request.url.params["order"] == "updated_at asc"
    assert request.url.params["updated_at_min"] == "2024-01-15T09:00:00+00:00"
    assert "page_info" not in request.url.params


@pytest.mark.asyncio
async def test_cursor_from_link_header(tenant_config):
    def handler(request):
        link = '<https://acme.example.com/admin/api/2024-01/products.json?limit=50&page_info=abc123>; rel="next"'
        return httpx.Response(200, headers={"Link": link}, json={"products": [{"id": 7}]})

    async with make_client(tenant_config, handler) as client:
        page = await client.fetch_page(EntityType.PRODUCTS)

    assert page.next_cursor == "abc123"
    assert not page.done


@pytest.mark.asyncio
async def test_cursor_page_sends_only_limit_and_page_info(tenant_config):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"orders": [], "next_cursor": None})

    async with make_client(tenant_config, handler) as client:
        await client.fetch_page(EntityType.ORDERS, cursor="abc123", window_start=datetime(2024, 1, 15))

    params = dict(seen[0].url.params)
    assert params == {"limit": "50", "page_info": "abc123"}


@pytest.mark.asyncio
async def test_cursor_from_body_and_list_bodies(tenant_config):
    bodies = iter([
        {"data": [{"id": 1}, "not-an-object"], "next_cursor": "next-1"},
        [{"id": 2}],
    ])

    def handler(request):
        return httpx.Response(200, json=next(bodies))

    async with make_client(tenant_config, handler) as client:
        first = await client.fetch_page(EntityType.ORDERS)
        second = await client.fetch_page(EntityType.ORDERS, cursor=first.next_cursor)

    assert first.items == [{"id": 1}]
    assert first.next_cursor == "next-1"
    assert second.items == [{"id": 2}]
    assert second.done


@pytest.mark.asyncio
async def test_auth_scheme_prefix(tenant_config):
    tenant = tenant_config.model_copy(update={"auth_header": "Authorization", "auth_scheme": "Bearer"})
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    async with make_client(tenant, handler) as client:
        await client.fetch_page(EntityType.ORDERS)

    assert seen[0].headers["Authorization"] == "Bearer shpat_test_token"


@pytest.mark.asyncio
async def test_429_honours_retry_after(tenant_config):
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "2"}),
        httpx.Response(200, json={"orders": [{"id": 1}]}),
    ])
    sleep = RecordingSleep()

    async with make_client(tenant_config, lambda request: next(responses), sleep=sleep) as client:
        page = await client.fetch_page(EntityType.ORDERS)

    assert len(page.items) == 1
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_429_retry_after_capped_at_max_delay(tenant_config):
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "600"}),
        httpx.Response(200, json={"orders": []}),
    ])
    sleep = RecordingSleep()

    async with make_client(tenant_config, lambda request: next(responses), sleep=sleep) as client:
        await client.fetch_page(EntityType.ORDERS)

    assert sleep.delays == [tenant_config.retry_max_delay_seconds]


@pytest.mark.asyncio
async def test_429_exhaustion_raises_throttled(tenant_config):
    sleep = RecordingSleep()

    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "3"})

    async with make_client(tenant_config, handler, sleep=sleep) as client:
        with pytest.raises(ThrottledError) as exc_info:
            await client.fetch_page(EntityType.ORDERS)

    assert exc_info.value.retry_after == 3.0
    assert exc_info.value.retryable
    assert len(sleep.delays) == tenant_config.max_request_attempts - 1


@pytest.mark.asyncio
async def test_5xx_retries_with_exponential_backoff(tenant_config):
    calls = []
    sleep = RecordingSleep()

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    async with make_client(tenant_config, handler, sleep=sleep) as client:
        with pytest.raises(ServerError) as exc_info:
            await client.fetch_page(EntityType.ORDERS)

    assert len(calls) == 3
    assert sleep.delays == [0.5, 1.0]
    assert exc_info.value.context["status_code"] == 503


@pytest.mark.asyncio
async def test_5xx_then_success(tenant_config):
    responses = iter([
        httpx.Response(502),
        httpx.Response(200, json={"orders": [{"id": 9}]}),
    ])

    async with make_client(tenant_config, lambda request: next(responses)) as client:
        page = await client.fetch_page(EntityType.ORDERS)

    assert page.items == [{"id": 9}]


@pytest.mark.asyncio
async def test_network_errors_are_retried_then_raised(tenant_config):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(tenant_config, handler) as client:
        with pytest.raises(NetworkError):
            await client.fetch_page(EntityType.ORDERS)

    assert len(calls) == tenant_config.max_request_attempts


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_auth_failures_are_not_retried(tenant_config, status):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status)

    async with make_client(tenant_config, handler) as client:
        with pytest.raises(UnauthorizedError) as exc_info:
            await client.fetch_page(EntityType.ORDERS)

    assert len(calls) == 1
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_404_and_other_4xx(tenant_config):
    async with make_client(tenant_config, lambda request: httpx.Response(404)) as client:
        with pytest.raises(NotFoundError):
            await client.fetch_page(EntityType.PRODUCTS)

    async with make_client(tenant_config, lambda request: httpx.Response(422, text="bad")) as client:
        with pytest.raises(APIClientError) as exc_info:
            await client.fetch_page(EntityType.PRODUCTS)
    assert exc_info.value.context["status_code"] == 422


@pytest.mark.asyncio
async def test_missing_token_fails_before_any_request(tenant_config):
    tenant = tenant_config.model_copy(update={"access_token": None})
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=[])

    async with make_client(tenant, handler) as client:
        with pytest.raises(ConfigurationError):
            await client.fetch_page(EntityType.ORDERS)

    assert calls == []


@pytest.mark.asyncio
async def test_invalid_json_is_a_server_error(tenant_config):
    async with make_client(tenant_config, lambda request: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(ServerError):
            await client.fetch_page(EntityType.ORDERS)


@pytest.mark.asyncio
async def test_quota_header_feeds_the_bucket(tenant_config):
    bucket = TokenBucket(40, 0.001)

    def handler(request):
        return httpx.Response(200, headers={"X-Shopify-Shop-Api-Call-Limit": "35/40"}, json=[])

    async with make_client(tenant_config, handler, limiter=bucket) as client:
        await client.fetch_page(EntityType.ORDERS)

    assert bucket.available == pytest.approx(5.0, abs=0.01)
