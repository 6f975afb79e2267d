"""
Cashfree Adapter
================
PG API with x-client-id / x-client-secret headers. Cashfree reports amounts
in rupees; they are normalized to paise so callers compare one unit base.
"""

from datetime import datetime, timezone
from typing import Optional

import httpx

from config import settings
from gateways.base import CircuitBreaker, PaymentGatewayClient
from schemas.payment_models import Customer, Gateway, GatewayOrder, GatewayPayment

# Cashfree payment_status -> normalized status
STATUS_MAP = {
    "SUCCESS": "captured",
    "FAILED": "failed",
    "PENDING": "pending",
    "NOT_ATTEMPTED": "created",
    "USER_DROPPED": "dropped",
    "CANCELLED": "cancelled",
    "VOID": "void",
}


class CashfreeClient(PaymentGatewayClient):
    gateway = Gateway.CASHFREE

    def __init__(
        self,
        client_id: str = settings.CASHFREE_CLIENT_ID,
        client_secret: str = settings.CASHFREE_CLIENT_SECRET,
        base_url: str = settings.CASHFREE_BASE_URL,
        api_version: str = settings.CASHFREE_API_VERSION,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(
            base_url=base_url,
            headers={
                "x-client-id": client_id,
                "x-client-secret": client_secret,
                "x-api-version": api_version,
            },
            timeout=timeout,
            client=client,
            breaker=breaker,
        )

    def _to_payment(self, data: dict) -> GatewayPayment:
        status = STATUS_MAP.get(str(data.get("payment_status", "")).upper(), "unknown")
        completed = data.get("payment_completion_time")
        return GatewayPayment(
            gateway=self.gateway,
            payment_id=str(data["cf_payment_id"]),
            order_id=data.get("order_id"),
            status=status,
            amount=int(round(float(data.get("payment_amount", 0)) * 100)),
            currency=data.get("payment_currency", "INR"),
            method=data.get("payment_group"),
            captured_at=(
                datetime.fromisoformat(completed).astimezone(timezone.utc).replace(tzinfo=None)
                if completed and status == "captured"
                else None
            ),
            raw=data,
        )

    async def fetch_payment(self, payment_id: str, order_id: Optional[str] = None) -> Optional[GatewayPayment]:
        if not order_id:
            raise ValueError("Cashfree payments are addressed by order id")
        data = await self._request("GET", f"/orders/{order_id}/payments/{payment_id}")
        return self._to_payment(data) if data else None

    async def fetch_payments_by_order(self, order_id: str) -> list[GatewayPayment]:
        data = await self._request("GET", f"/orders/{order_id}/payments")
        return [self._to_payment(item) for item in (data or [])]

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        customer: Customer,
        receipt: Optional[str] = None,
    ) -> GatewayOrder:
        body = {
            "order_amount": round(amount_minor / 100, 2),
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.user_id or customer.email.replace("@", "_").replace(".", "_"),
                "customer_email": customer.email,
                "customer_phone": customer.phone,
                "customer_name": customer.username,
            },
            "order_meta": {
                "return_url": f"{settings.FRONTEND_URL}/payment/status?order_id={{order_id}}",
            },
        }
        if receipt:
            body["order_id"] = receipt

        data = await self._request("POST", "/orders", json=body)
        self._logger.info("gateway_order_created", order_id=data["order_id"], amount=amount_minor)
        return GatewayOrder(
            gateway=self.gateway,
            order_id=data["order_id"],
            amount=int(round(float(data.get("order_amount", 0)) * 100)),
            currency=data.get("order_currency", currency),
            receipt=receipt,
            session_ref=data["payment_session_id"],
            raw=data,
        )
