"""
Commerce Platform API Client

Async wrapper for the upstream (Square-style) REST API that handles:
- Bearer authentication plus a pinned API version header
- Bounded per-request timeout
- Structured error mapping onto the reconciliation error taxonomy
- Optional exponential backoff for bulk callers (backfill)
- Cursor pagination

Webhook-path callers keep ``max_retries=0``: a timeout or 429 must become a
RetryJob, not a blocked request.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..errors import (
    UpstreamError,
    UpstreamNotFound,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)


@dataclass
class UpstreamErrorInfo:
    """Structured error from the upstream API"""
    code: str
    message: str
    status_code: int
    retryable: bool = False


# Error mapping for upstream responses
ERROR_MAP = {
    400: UpstreamErrorInfo("bad_request", "Invalid request", 400, False),
    401: UpstreamErrorInfo("unauthorized", "Invalid or missing access token", 401, False),
    403: UpstreamErrorInfo("forbidden", "Access denied to this resource", 403, False),
    404: UpstreamErrorInfo("not_found", "Resource not found", 404, False),
    429: UpstreamErrorInfo("rate_limited", "Too many requests", 429, True),
    500: UpstreamErrorInfo("server_error", "Upstream server error", 500, True),
    502: UpstreamErrorInfo("bad_gateway", "Upstream gateway error", 502, True),
    503: UpstreamErrorInfo("service_unavailable", "Upstream service unavailable", 503, True),
    504: UpstreamErrorInfo("gateway_timeout", "Upstream gateway timeout", 504, True),
}

SEARCH_ORDERS_PAGE_SIZE = 500


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class UpstreamClient:
    """
    Client for the commerce platform's read APIs.

    Every method returns the entity object itself (the ``order`` inside
    ``{"order": {...}}``) so results feed straight into the normalizer.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = 0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or default_settings
        self.access_token = access_token if access_token is not None else self.settings.square_access_token
        self.base_url = (base_url or self.settings.square_base_url).rstrip("/")
        self.timeout = timeout or self.settings.upstream_timeout_seconds
        self.max_retries = max_retries
        self.base_delay = 1.0
        self.max_delay = 30.0
        self._sleep = sleep
        self._transport = transport

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._get_headers(),
            timeout=self.timeout,
            transport=transport,
        )

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.settings.square_api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "eventsync/1.0",
        }

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def with_retries(self, max_retries: int) -> "UpstreamClient":
        """A sibling client sharing configuration but with in-client backoff."""
        return UpstreamClient(
            settings=self.settings,
            access_token=self.access_token,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=max_retries,
            transport=self._transport,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _map_error(self, response: httpx.Response) -> UpstreamError:
        """Map an HTTP error response onto the error taxonomy"""
        status_code = response.status_code
        info = ERROR_MAP.get(status_code)
        if info is None:
            if status_code >= 500:
                info = UpstreamErrorInfo("server_error", f"Server error: {status_code}", status_code, True)
            else:
                info = UpstreamErrorInfo("unknown", f"Unknown error: {status_code}", status_code, False)

        message = info.message
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("errors"):
            detail = data["errors"][0].get("detail") or data["errors"][0].get("code")
            if detail:
                message = detail

        path = response.request.url.path if response.request else ""
        message = f"{path}: {message}"
        if status_code == 404:
            return UpstreamNotFound(message)
        if status_code == 429:
            return UpstreamRateLimited(message, retry_after=_retry_after(response))
        if info.retryable:
            return UpstreamUnavailable(message, status_code=status_code)
        return UpstreamError(message, status_code=status_code)

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """
        Make one API call, retrying retryable failures up to ``max_retries``
        times with exponential backoff.
        """
        last_error: Optional[UpstreamError] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.request(method, endpoint, json=json, params=params)
            except httpx.TimeoutException as e:
                last_error = UpstreamTimeout(f"{endpoint}: timed out after {self.timeout}s")
                logger.warning(f"{method} {endpoint} timed out: {e}")
            except httpx.TransportError as e:
                last_error = UpstreamUnavailable(f"{endpoint}: {e}")
                logger.warning(f"{method} {endpoint} transport error: {e}")
            else:
                if 200 <= response.status_code < 300:
                    try:
                        return response.json() if response.content else {}
                    except ValueError:
                        last_error = UpstreamUnavailable(
                            f"{endpoint}: response body is not JSON", status_code=response.status_code
                        )
                        logger.warning(f"{method} {endpoint} returned a non-JSON body")
                else:
                    last_error = self._map_error(response)
                    if not last_error.retryable:
                        raise last_error
                    logger.warning(f"{method} {endpoint} returned {response.status_code}")

            if attempt >= self.max_retries:
                break

            delay = min(self.base_delay * (2 ** attempt), self.max_delay)
            if isinstance(last_error, UpstreamRateLimited) and last_error.retry_after:
                delay = max(delay, min(last_error.retry_after, self.max_delay))
            logger.info(f"Retrying {method} {endpoint} in {delay:.1f}s (attempt {attempt + 1})")
            await self._sleep(delay)

        raise last_error

    # ------------------------------------------------------------------
    # Entity reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/v2/orders/{order_id}")
        return data.get("order") or {}

    async def get_booking(self, booking_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/v2/bookings/{booking_id}")
        return data.get("booking") or {}

    async def get_gift_card(self, gift_card_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/v2/gift-cards/{gift_card_id}")
        return data.get("gift_card") or {}

    async def get_team_member(self, team_member_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/v2/team-members/{team_member_id}")
        return data.get("team_member") or {}

    async def list_gift_card_activities(self, gift_card_id: str) -> List[Dict[str, Any]]:
        """Full activity history of one card, oldest first."""
        activities: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params = {"gift_card_id": gift_card_id, "sort_order": "ASC"}
            if cursor:
                params["cursor"] = cursor
            data = await self._request("GET", "/v2/gift-cards/activities", params=params)
            activities.extend(data.get("gift_card_activities") or [])
            cursor = data.get("cursor")
            if not cursor:
                return activities

    async def search_orders(
        self,
        location_ids: List[str],
        start: datetime,
        end: datetime,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield pages of orders created in [start, end) at the given locations."""
        cursor = None
        page = 0
        while True:
            body: Dict[str, Any] = {
                "location_ids": list(location_ids),
                "limit": SEARCH_ORDERS_PAGE_SIZE,
                "query": {
                    "filter": {
                        "date_time_filter": {
                            "created_at": {
                                "start_at": _format_time(start),
                                "end_at": _format_time(end),
                            }
                        }
                    },
                    "sort": {"sort_field": "CREATED_AT", "sort_order": "ASC"},
                },
            }
            if cursor:
                body["cursor"] = cursor
            data = await self._request("POST", "/v2/orders/search", json=body)
            orders = data.get("orders") or []
            page += 1
            logger.debug(f"search_orders page {page}: {len(orders)} orders")
            if orders:
                yield orders
            cursor = data.get("cursor")
            if not cursor:
                return
