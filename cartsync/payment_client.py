"""
Client for the hosted payment page provider (PayMongo-style checkout sessions).
"""
import base64
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

import httpx

from cartsync.config import Config
from cartsync.exceptions import PaymentGatewayError
from cartsync.models import PaymentItem, PaymentRequest

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_ERROR = "Failed to create checkout session"
PAYMENT_METHOD_TYPES = ["card", "gcash"]


def to_minor_units(amount: Decimal) -> int:
    """Currency amount to integer cents, rounding half up"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def describe_item(item: PaymentItem) -> str:
    if item.selected_variations:
        return ", ".join(f"{key}: {value}" for key, value in item.selected_variations.items())
    return f"{item.name} - Standard item"


def build_line_items(items: List[PaymentItem], currency: str) -> List[dict]:
    line_items = []
    for item in items:
        unit_price = item.variation_price if item.variation_price is not None else item.price
        line_items.append({
            "name": item.name,
            "quantity": item.quantity,
            "amount": to_minor_units(unit_price),
            "currency": currency,
            "description": describe_item(item),
        })
    return line_items


class PaymentClient:
    def __init__(
        self,
        api_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        # Initialize configuration and callback URLs
        self.api_url = (api_url or Config.PAYMENT_API_URL).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else Config.PAYMENT_SECRET_KEY
        self.base_url = (base_url or Config.PUBLIC_BASE_URL).rstrip("/")
        self.currency = currency or Config.PAYMENT_CURRENCY
        self.timeout = Config.PAYMENT_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> dict:
        token = base64.b64encode(self.secret_key.encode()).decode()
        return {
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }

    def build_session_payload(self, request: PaymentRequest, timestamp: Optional[int] = None) -> dict:
        timestamp = timestamp or int(time.time() * 1000)
        return {
            "data": {
                "attributes": {
                    "send_email_receipt": False,
                    "show_description": True,
                    "show_line_items": True,
                    "payment_method_types": PAYMENT_METHOD_TYPES,
                    "line_items": build_line_items(request.items, self.currency),
                    "payment_intent_data": {"capture_type": "automatic"},
                    "success_url": (
                        f"{self.base_url}/payment/success"
                        f"?session_id={{CHECKOUT_SESSION_ID}}&timestamp={timestamp}"
                    ),
                    "cancel_url": f"{self.base_url}/checkout?canceled=true&timestamp={timestamp}",
                    "description": f"Order for {len(request.items)} items",
                    "billing": None,
                }
            }
        }

    async def create_checkout_session(self, request: PaymentRequest) -> str:
        """
        Create a hosted checkout session and return its URL.

        Raises:
            PaymentGatewayError: the gateway rejected the request or was unreachable
        """
        if not self.secret_key:
            raise PaymentGatewayError("Payment secret key is not configured")

        url = f"{self.api_url}/v1/checkout_sessions"
        payload = self.build_session_payload(request)

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                response = await client.post(url, json=payload, headers=self._headers())
            except httpx.RequestError as e:
                logger.error(f"Payment gateway request error: {e}")
                raise PaymentGatewayError(DEFAULT_GATEWAY_ERROR) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            logger.error(f"Payment gateway error {response.status_code}: {data}")
            detail = None
            errors = data.get("errors") if isinstance(data, dict) else None
            if errors:
                detail = errors[0].get("detail")
            raise PaymentGatewayError(detail or DEFAULT_GATEWAY_ERROR, status_code=response.status_code)

        try:
            return data["data"]["attributes"]["checkout_url"]
        except (KeyError, TypeError) as e:
            logger.error(f"Payment gateway response without checkout URL: {data}")
            raise PaymentGatewayError(DEFAULT_GATEWAY_ERROR, status_code=response.status_code) from e
