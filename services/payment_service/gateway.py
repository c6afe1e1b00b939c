"""Payment gateway port and its adapters.

``PaymentGateway`` is the contract the payment service talks to.
``PayPalGateway`` is the production adapter; ``FakeGateway`` is a
configurable stand-in for development and tests.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.errors import PaymentFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureResult:
    """Result of capturing an approved payment."""
    external_payment_id: str
    status: str
    payer_email: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == "COMPLETED"


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    async def create_order(self, amount: Decimal, reference: str) -> str:
        """Open a payment for ``amount``. Returns the gateway's order id."""
        ...

    @abstractmethod
    async def capture_payment(self, external_id: str) -> CaptureResult:
        """Capture a payment the buyer approved."""
        ...


class PayPalGateway(PaymentGateway):
    """PayPal Orders v2 API over httpx, authenticated with client credentials."""

    def __init__(
        self,
        client_id: str,
        app_secret: str,
        api_url: str = "https://api-m.sandbox.paypal.com",
        currency: str = "USD",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.app_secret = app_secret
        self.currency = currency
        self.client = client or httpx.AsyncClient(base_url=api_url, timeout=timeout)

    async def close(self):
        await self.client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def get_access_token(self) -> str:
        response = await self.client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.app_secret),
        )
        data = _json_or_raise(response, "Failed to get PayPal access token")
        return data["access_token"]

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def create_order(self, amount: Decimal, reference: str) -> str:
        token = await self.get_access_token()
        response = await self.client.post(
            "/v2/checkout/orders",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": reference,
                        "custom_id": reference,
                        "amount": {"currency_code": self.currency, "value": str(amount)},
                    }
                ],
            },
        )
        data = _json_or_raise(response, "PayPal order creation failed")
        if not data.get("id"):
            raise PaymentFailed("PayPal order creation failed - no order ID returned")

        logger.info(f"Created PayPal order {data['id']} for {reference} ({amount} {self.currency})")
        return data["id"]

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def capture_payment(self, external_id: str) -> CaptureResult:
        token = await self.get_access_token()
        response = await self.client.post(
            f"/v2/checkout/orders/{external_id}/capture",
            headers={"Authorization": f"Bearer {token}"},
        )
        data = _json_or_raise(response, "Failed to capture PayPal payment")

        logger.info(f"Captured PayPal order {external_id}: {data.get('status')}")
        return CaptureResult(
            external_payment_id=data.get("id", external_id),
            status=data.get("status", "UNKNOWN"),
            payer_email=(data.get("payer") or {}).get("email_address"),
            raw=data,
        )


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self):
        self.should_succeed: bool = True
        self.failure_reason: str = "Payment declined"
        self.payer_email: Optional[str] = "buyer@example.com"
        self.calls: List[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Payment declined"):
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    async def create_order(self, amount: Decimal, reference: str) -> str:
        self.calls.append({"method": "create_order", "amount": amount, "reference": reference})
        if not self.should_succeed:
            raise PaymentFailed(self.failure_reason)
        return f"FAKE-{uuid4().hex[:12].upper()}"

    async def capture_payment(self, external_id: str) -> CaptureResult:
        self.calls.append({"method": "capture_payment", "external_id": external_id})
        if not self.should_succeed:
            raise PaymentFailed(self.failure_reason, external_payment_id=external_id)
        return CaptureResult(
            external_payment_id=external_id,
            status="COMPLETED",
            payer_email=self.payer_email,
            raw={"id": external_id, "status": "COMPLETED"},
        )


def _json_or_raise(response: httpx.Response, message: str) -> Dict[str, Any]:
    if response.is_success:
        return response.json()

    logger.error(f"{message}: HTTP {response.status_code} {response.text}")
    raise PaymentFailed(message, http_status=response.status_code, detail=response.text)
