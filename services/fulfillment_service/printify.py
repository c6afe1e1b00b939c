"""Printify print-on-demand API client."""
import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import httpx
from pydantic import BaseModel

from shared.errors import FulfillmentFailed

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60.0

ERROR_MESSAGES = {
    401: "Authentication failed: Invalid Printify API token",
    403: "Authorization failed: Insufficient permissions for this operation",
    404: "Resource not found: The requested item does not exist",
    422: "Validation error: The provided data is invalid",
}


class PrintifyError(FulfillmentFailed):
    """A Printify request failed."""
    code = "printify_error"

    def __init__(self, message: str, http_status: Optional[int] = None, **details: Any):
        super().__init__(message, http_status=http_status, **details)
        self.http_status = http_status


class PrintifyLineItem(BaseModel):
    product_id: str
    variant_id: int
    quantity: int


class PrintifyAddress(BaseModel):
    first_name: str
    last_name: str = ""
    email: str
    phone: str = ""
    country: str
    region: str = ""
    address1: str
    address2: str = ""
    city: str
    zip: str = ""


class PrintifyOrderData(BaseModel):
    """Order payload accepted by ``POST /shops/{shop_id}/orders.json``."""
    external_id: str
    line_items: List[PrintifyLineItem]
    shipping_method: int = 1
    send_shipping_notification: bool = False
    address_to: PrintifyAddress


class PrintifyOrderStatus(BaseModel):
    status: str
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None

    @property
    def shipped(self) -> bool:
        return self.status == "shipped" or self.tracking_number is not None


class SlidingWindowRateLimiter:
    """Allows at most ``max_requests`` calls in any ``window_seconds`` window."""

    def __init__(
        self,
        max_requests: int = 600,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._requests: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def wait_time(self) -> float:
        """Seconds until a slot frees up (0 when one is free)."""
        now = self._clock()
        self._prune(now)
        if len(self._requests) < self.max_requests:
            return 0.0
        return max(0.0, self.window_seconds - (now - self._requests[0]))

    async def acquire(self):
        async with self._lock:
            wait = self.wait_time()
            if wait > 0:
                logger.info(f"Printify rate limit reached, waiting {wait:.2f}s")
                await self._sleep(wait)
                self._prune(self._clock())
            self._requests.append(self._clock())

    def _prune(self, now: float):
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()


class PrintifyClient:
    """Async Printify client with client-side rate limiting."""

    def __init__(
        self,
        access_token: str,
        shop_id: int,
        base_url: str = "https://api.printify.com/v1",
        timeout: float = 30.0,
        max_requests: int = 600,
        window_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.shop_id = shop_id
        self._sleep = sleep
        self.rate_limiter = SlidingWindowRateLimiter(max_requests, window_seconds, sleep=sleep)
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.client.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "User-Agent": "Storefront/1.0",
            }
        )

    async def close(self):
        await self.client.aclose()

    async def submit_order(self, order_data: PrintifyOrderData) -> Dict[str, Any]:
        """Create a Printify order. Returns the created order (``id``, ``status``, ...)."""
        logger.info(
            f"Submitting Printify order {order_data.external_id} "
            f"({len(order_data.line_items)} line items)"
        )
        result = await self._request(
            "POST",
            f"/shops/{self.shop_id}/orders.json",
            json=order_data.model_dump(),
        )
        logger.info(f"Printify order created: {result.get('id')}")
        return result

    async def get_order(self, printify_order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/shops/{self.shop_id}/orders/{printify_order_id}.json")

    async def get_order_status(self, printify_order_id: str) -> PrintifyOrderStatus:
        order = await self.get_order(printify_order_id)
        shipment = (order.get("shipments") or [{}])[0]
        return PrintifyOrderStatus(
            status=order.get("status", "pending"),
            tracking_number=shipment.get("number"),
            tracking_url=shipment.get("url"),
            carrier=shipment.get("carrier"),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        retry_on_429: bool = True,
    ) -> Dict[str, Any]:
        await self.rate_limiter.acquire()

        try:
            response = await self.client.request(method, path, json=json)
        except httpx.TransportError as e:
            logger.error(f"Printify {method} {path} failed: {str(e)}")
            raise PrintifyError("Network error: Unable to connect to Printify API") from e

        if response.status_code == 429 and retry_on_429:
            wait = _retry_after(response.headers.get("Retry-After"))
            logger.warning(f"Printify rate limited {method} {path}, retrying in {wait}s")
            await self._sleep(wait)
            return await self._request(method, path, json=json, retry_on_429=False)

        if not response.is_success:
            message = ERROR_MESSAGES.get(
                response.status_code,
                f"Printify API error: {response.status_code} {response.reason_phrase}",
            )
            logger.error(f"Printify {method} {path}: HTTP {response.status_code} {response.text}")
            raise PrintifyError(message, http_status=response.status_code, detail=response.text)

        return response.json()


def to_printify_order(
    order_id: str,
    shipping_address: Dict[str, Any],
    email: Optional[str],
    items: Iterable[Dict[str, Any]],
) -> PrintifyOrderData:
    """
    Build the Printify payload for some order lines.

    ``shipping_address`` is the order's address snapshot; ``items`` hold
    ``printify_variant_id`` and ``quantity``.
    """
    full_name = (shipping_address.get("full_name") or "").strip()
    first_name, _, last_name = full_name.partition(" ")

    return PrintifyOrderData(
        external_id=order_id,
        line_items=[
            PrintifyLineItem(
                product_id=str(item.get("printify_product_id") or item["printify_variant_id"]),
                variant_id=int(item["printify_variant_id"]),
                quantity=item["quantity"],
            )
            for item in items
        ],
        address_to=PrintifyAddress(
            first_name=first_name or "Customer",
            last_name=last_name,
            email=email or "customer@example.com",
            phone=shipping_address.get("phone") or "",
            country=shipping_address.get("country") or "US",
            region=shipping_address.get("state") or shipping_address.get("region") or "",
            address1=shipping_address.get("street") or shipping_address.get("address1") or "",
            address2=shipping_address.get("address2") or "",
            city=shipping_address.get("city") or "",
            zip=shipping_address.get("postal_code") or shipping_address.get("zip") or "",
        ),
    )


def _retry_after(value: Optional[str]) -> float:
    try:
        return float(value) if value is not None else DEFAULT_RETRY_AFTER_SECONDS
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
