"""
Upstream e-commerce API client with rate limiting and retry logic.

This module provides:
- Per-tenant token bucket shared by every request of the tenant
- Exponential backoff with jitter for 429, 5xx, timeouts and network errors
- Immediate failure for 401/403/404 (retrying cannot succeed)
- Stateless cursor pagination: any page can be requested from its cursor
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from core.config import TenantConfig
from core.exceptions import (
    APIClientError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ServerError,
    ThrottledError,
    UnauthorizedError,
)
from core.retry import RetryPolicy
from models.base import EntityType
from sync.rate_limiter import TokenBucket, parse_quota_header, rate_limiters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Page:
    """One page of upstream items plus the cursor of the next page"""

    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.next_cursor is None


class UpstreamClient:
    """
    Fetch pages of orders/products for one tenant.

    Features:
    - Access token authentication (header name and scheme configurable)
    - Cursor pagination via ``page_info`` (Link header or body ``next_cursor``)
    - Incremental windows via ``updated_at_min``
    - Token bucket rate limiting fed by the upstream quota header
    - Retry logic with exponential backoff and jitter

    The client keeps no pagination state: ``fetch_page`` is a pure function of
    its arguments, so a crashed fetch cycle can resume from a stored cursor.
    """

    def __init__(
        self,
        tenant: TenantConfig,
        limiter: Optional[TokenBucket] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.tenant = tenant
        self.limiter = limiter or rate_limiters.for_tenant(tenant)
        self.retry_policy = retry_policy or RetryPolicy.for_requests(tenant)
        self.timeout = tenant.request_timeout_seconds
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "UpstreamClient":
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        if self.tenant.access_token is None or not self.tenant.access_token.get_secret_value():
            raise ConfigurationError(
                "Missing API credentials",
                context={"tenant_id": self.tenant.tenant_id}
            )
        token = self.tenant.access_token.get_secret_value()
        if self.tenant.auth_scheme:
            token = f"{self.tenant.auth_scheme} {token}"
        return {
            self.tenant.auth_header: token,
            "Accept": "application/json",
        }

    def url_for(self, entity_type: EntityType) -> str:
        return f"{self.tenant.api_base_url}/{entity_type.value}.json"

    def _params(self, cursor: Optional[str], window_start: Optional[datetime]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": self.tenant.page_size}
        if cursor:
            # Filters are encoded in the cursor; only limit may accompany it
            params["page_info"] = cursor
            return params
        params["order"] = "updated_at asc"
        params["status"] = "any"
        if window_start is not None:
            params["updated_at_min"] = window_start.replace(tzinfo=timezone.utc).isoformat()
        return params

    def _observe_quota(self, response: httpx.Response) -> None:
        quota = parse_quota_header(response.headers.get(self.tenant.quota_header))
        if quota:
            self.limiter.observe_quota(*quota)

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            return None

    async def _request_with_retry(self, url: str, params: Dict[str, Any]) -> httpx.Response:
        """
        GET with rate limiting, classification and exponential backoff.

        Raises:
            UnauthorizedError: 401/403
            NotFoundError: 404
            APIClientError: other 4xx
            ThrottledError / ServerError / NetworkError: attempt budget spent
            RateLimitedError: token bucket wait exceeded its bound
        """
        headers = self._headers()
        client = self._get_client()
        policy = self.retry_policy
        context = {"tenant_id": self.tenant.tenant_id, "url": url}

        for attempt in range(policy.max_attempts):
            last_attempt = attempt == policy.max_attempts - 1
            await self.limiter.acquire(self.tenant.rate_limit_max_wait_seconds)

            logger.debug(f"Request attempt {attempt + 1}/{policy.max_attempts} to {url}")
            try:
                response = await client.get(url, headers=headers, params=params, timeout=self.timeout)
            except httpx.TransportError as e:
                if last_attempt:
                    raise NetworkError(
                        f"Network error after {policy.max_attempts} attempts",
                        context={**context, "attempts": attempt + 1},
                        original_exception=e
                    )
                delay = policy.delay(attempt)
                logger.warning(f"{type(e).__name__} for {url}. Retrying in {delay:.2f}s")
                await self._sleep(delay)
                continue

            self._observe_quota(response)
            status = response.status_code

            if status in (401, 403):
                raise UnauthorizedError(
                    f"Authentication failed for {url}",
                    context={**context, "status_code": status}
                )

            if status == 404:
                raise NotFoundError(
                    f"Resource not found: {url}",
                    context={**context, "status_code": status}
                )

            if status == 429:
                retry_after = self._retry_after(response)
                if last_attempt:
                    raise ThrottledError(
                        f"Rate limit exceeded for {url}",
                        context={**context, "status_code": status, "attempts": attempt + 1},
                        retry_after=retry_after
                    )
                delay = min(policy.max_delay, retry_after) if retry_after is not None else policy.delay(attempt)
                logger.warning(f"Rate limited (429). Retrying in {delay:.2f}s (attempt {attempt + 1}/{policy.max_attempts})")
                await self._sleep(delay)
                continue

            if status >= 500:
                if last_attempt:
                    raise ServerError(
                        f"Server error after {policy.max_attempts} attempts",
                        context={
                            **context,
                            "status_code": status,
                            "attempts": attempt + 1,
                            "response_body": response.text[:500]
                        }
                    )
                delay = policy.delay(attempt)
                logger.warning(
                    f"Server error {status}. "
                    f"Retrying in {delay:.2f}s (attempt {attempt + 1}/{policy.max_attempts})"
                )
                await self._sleep(delay)
                continue

            if status >= 400:
                raise APIClientError(
                    f"Request rejected with HTTP {status}",
                    context={**context, "status_code": status, "response_body": response.text[:500]}
                )

            return response

        # max_attempts >= 1 guarantees the loop returns or raises
        raise APIClientError("Max attempts exceeded", context=context)

    @staticmethod
    def _next_cursor(response: httpx.Response, data: Any) -> Optional[str]:
        next_link = response.links.get("next")
        if next_link and next_link.get("url"):
            page_info = httpx.URL(next_link["url"]).params.get("page_info")
            if page_info:
                return page_info
        if isinstance(data, dict) and data.get("next_cursor"):
            return str(data["next_cursor"])
        return None

    async def fetch_page(
        self,
        entity_type: EntityType,
        cursor: Optional[str] = None,
        window_start: Optional[datetime] = None,
    ) -> Page:
        """
        Fetch one page.

        Args:
            entity_type: orders or products
            cursor: Cursor returned with the previous page (None for the first page)
            window_start: Only items updated at or after this instant (None = everything)

        Returns:
            Page with items and the next cursor (None when this was the last page)
        """
        url = self.url_for(entity_type)
        response = await self._request_with_retry(url, self._params(cursor, window_start))

        try:
            data = response.json()
        except ValueError as e:
            raise ServerError(
                "Failed to parse JSON response",
                context={
                    "tenant_id": self.tenant.tenant_id,
                    "url": url,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )

        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get(entity_type.value, data.get("data", []))
        else:
            items = []

        items = [item for item in items if isinstance(item, dict)]
        next_cursor = self._next_cursor(response, data)

        logger.debug(
            f"Fetched {len(items)} {entity_type.value} for {self.tenant.tenant_id} "
            f"(next cursor: {'yes' if next_cursor else 'no'})"
        )
        return Page(items=items, next_cursor=next_cursor)
