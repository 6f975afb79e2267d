"""
Conversion Tracking
===================
Fire-and-forget Purchase event to the Facebook Conversions API. Buyer
identifiers are SHA-256 hashed before leaving the process. Never raises.

pip install httpx
"""

import hashlib
import time
from typing import Optional, Sequence

import httpx
import structlog

from config import settings
from schemas.payment_models import Payment


def hash_sha256(value: str) -> str:
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


class ConversionTracker:

    def __init__(
        self,
        pixel_id: str = settings.FB_PIXEL_ID,
        access_token: str = settings.FB_PIXEL_ACCESS_TOKEN,
        graph_url: str = settings.FB_GRAPH_URL,
        timeout: float = settings.PIXEL_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.graph_url = graph_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._logger = structlog.get_logger().bind(component="pixel_tracker")

    @property
    def enabled(self) -> bool:
        return bool(self.pixel_id and self.access_token)

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    def build_event(
        self,
        payment: Payment,
        product_id: str,
        product_title: str,
        bump_ids: Sequence[str] = (),
    ) -> dict:
        user_data = {"em": [hash_sha256(payment.email)]}
        if payment.phone:
            user_data["ph"] = [hash_sha256(str(payment.phone))]

        event = {
            "event_name": "Purchase",
            "event_time": int(time.time()),
            "event_id": payment.order_id,
            "user_data": user_data,
            "custom_data": {
                "currency": payment.currency,
                "value": payment.amount,
                "content_name": product_title,
                "content_category": payment.product_type.value,
                "content_ids": [product_id],
                "content_type": "product",
            },
            "action_source": "website",
        }
        if bump_ids:
            event["custom_data"]["contents"] = [
                {"id": product_id, "quantity": 1, "item_price": payment.amount},
                *({"id": str(b), "quantity": 1} for b in bump_ids),
            ]
        return event

    async def track_purchase(
        self,
        payment: Payment,
        product_id: str,
        product_title: str,
        bump_ids: Sequence[str] = (),
    ) -> bool:
        if not self.enabled:
            self._logger.debug("pixel_disabled", order_id=payment.order_id)
            return False

        try:
            response = await self._client.post(
                f"{self.graph_url}/{self.pixel_id}/events",
                params={"access_token": self.access_token},
                json={"data": [self.build_event(payment, product_id, product_title, bump_ids)]},
            )
            response.raise_for_status()
            self._logger.info("pixel_tracked", order_id=payment.order_id)
            return True
        except Exception as e:
            self._logger.warning("pixel_tracking_failed", order_id=payment.order_id, error=str(e))
            return False
