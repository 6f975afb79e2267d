"""
Razorpay Adapter
================
REST v1 with key-id/secret basic auth. Amounts are already in paise.
Checkout callbacks are authenticated with HMAC-SHA256(order_id|payment_id).
"""

import hashlib
import hmac
from datetime import datetime
from typing import Optional

import httpx

from config import settings
from gateways.base import CircuitBreaker, PaymentGatewayClient
from schemas.payment_models import Customer, Gateway, GatewayOrder, GatewayPayment


class RazorpayClient(PaymentGatewayClient):
    gateway = Gateway.RAZORPAY

    def __init__(
        self,
        key_id: str = settings.RAZORPAY_KEY_ID,
        key_secret: str = settings.RAZORPAY_KEY_SECRET,
        base_url: str = settings.RAZORPAY_BASE_URL,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            client=client,
            breaker=breaker,
        )
        self._key_secret = key_secret

    def _is_not_found(self, response: httpx.Response) -> bool:
        # Unknown ids come back as 400 BAD_REQUEST_ERROR
        if response.status_code == 404:
            return True
        if response.status_code == 400:
            try:
                description = response.json().get("error", {}).get("description") or ""
            except ValueError:
                return False
            return "does not exist" in description.lower()
        return False

    def _to_payment(self, data: dict) -> GatewayPayment:
        created = data.get("created_at")
        return GatewayPayment(
            gateway=self.gateway,
            payment_id=data["id"],
            order_id=data.get("order_id"),
            status=data.get("status", "unknown"),
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", "INR"),
            method=data.get("method"),
            captured_at=(
                datetime.utcfromtimestamp(created)
                if created and data.get("status") == "captured"
                else None
            ),
            raw=data,
        )

    async def fetch_payment(self, payment_id: str, order_id: Optional[str] = None) -> Optional[GatewayPayment]:
        data = await self._request("GET", f"/payments/{payment_id}")
        return self._to_payment(data) if data else None

    async def fetch_payments_by_order(self, order_id: str) -> list[GatewayPayment]:
        data = await self._request("GET", f"/orders/{order_id}/payments")
        if not data:
            return []
        return [self._to_payment(item) for item in data.get("items", [])]

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        customer: Customer,
        receipt: Optional[str] = None,
    ) -> GatewayOrder:
        data = await self._request("POST", "/orders", json={
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": {"email": customer.email, "username": customer.username},
        })
        self._logger.info("gateway_order_created", order_id=data["id"], amount=amount_minor)
        return GatewayOrder(
            gateway=self.gateway,
            order_id=data["id"],
            amount=int(data.get("amount", amount_minor)),
            currency=data.get("currency", currency),
            receipt=data.get("receipt"),
            session_ref=data["id"],
            raw=data,
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the checkout callback signature"""
        expected = hmac.new(
            self._key_secret.encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature or "")
