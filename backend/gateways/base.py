"""
Gateway Client Contract
=======================
Shared HTTP plumbing for payment-provider adapters:
- Bounded timeouts (httpx) classified as retryable GatewayUnavailable
- Circuit breaker per gateway (stops hammering a provider that is down)
- Not-found surfaces as None, never as an exception

pip install httpx structlog
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

from config import settings
from schemas.payment_models import Customer, Gateway, GatewayOrder, GatewayPayment


# =============================================================================
# ERRORS
# =============================================================================

class GatewayError(Exception):
    """Base class for provider failures"""

    retryable: bool = False

    def __init__(self, gateway: Gateway, message: str, status_code: Optional[int] = None):
        super().__init__(f"{gateway.display_name}: {message}")
        self.gateway = gateway
        self.status_code = status_code


class GatewayUnavailable(GatewayError):
    """Network, timeout, auth or 5xx; safe to retry on a later sweep"""

    retryable = True


class GatewayRequestError(GatewayError):
    """Provider rejected the request (4xx other than auth/not-found)"""


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker for provider resilience"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = settings.CB_FAILURE_THRESHOLD,
        reset_timeout: float = settings.CB_RESET_TIMEOUT_SECONDS,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time:
                    elapsed = (datetime.utcnow() - self._last_failure_time).total_seconds()
                    if elapsed >= self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._logger.info("circuit_half_open", elapsed=elapsed)
                        return True
                return False

            # HALF_OPEN: allow probe
            return True

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._failures = 0

    async def record_failure(self, error: Exception = None):
        async with self._lock:
            self._failures += 1
            self._last_failure_time = datetime.utcnow()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold and self._state != CircuitState.OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))


# =============================================================================
# CLIENT CONTRACT
# =============================================================================

class PaymentGatewayClient(ABC):
    """
    Thin adapter over a provider's order/payment APIs.

    Subclasses set ``gateway`` and implement the three contract methods;
    ``_request`` handles timeouts, auth/5xx classification and the breaker.
    """

    gateway: Gateway = Gateway.OTHER

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict] = None,
        auth: Optional[tuple[str, str]] = None,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            auth=auth,
            timeout=timeout,
        )
        self.breaker = breaker or CircuitBreaker(name=self.gateway.value)
        self._logger = structlog.get_logger().bind(component="gateway", gateway=self.gateway.value)

    @property
    def display_name(self) -> str:
        return self.gateway.display_name

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    @abstractmethod
    async def fetch_payment(self, payment_id: str, order_id: Optional[str] = None) -> Optional[GatewayPayment]:
        """Payment by gateway id, or None if the gateway does not know it."""

    @abstractmethod
    async def fetch_payments_by_order(self, order_id: str) -> list[GatewayPayment]:
        """All payment attempts for a gateway order (may be empty)."""

    @abstractmethod
    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        customer: Customer,
        receipt: Optional[str] = None,
    ) -> GatewayOrder:
        """Open a gateway order and return the checkout handle."""

    def _is_not_found(self, response: httpx.Response) -> bool:
        return response.status_code == 404

    async def _request(self, method: str, path: str, json: Any = None) -> Optional[Any]:
        """Issue a request; returns parsed JSON or None for not-found."""
        if not await self.breaker.can_execute():
            raise GatewayUnavailable(self.gateway, "circuit open, provider temporarily disabled")

        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            await self.breaker.record_failure(e)
            self._logger.warning("gateway_timeout", method=method, path=path)
            raise GatewayUnavailable(self.gateway, f"timeout calling {path}") from e
        except httpx.HTTPError as e:
            await self.breaker.record_failure(e)
            self._logger.warning("gateway_network_error", method=method, path=path, error=str(e))
            raise GatewayUnavailable(self.gateway, f"network error: {e}") from e

        if response.status_code in (401, 403):
            await self.breaker.record_failure()
            self._logger.error("gateway_auth_rejected", status=response.status_code, path=path)
            raise GatewayUnavailable(self.gateway, "authentication rejected", response.status_code)

        if response.status_code >= 500:
            await self.breaker.record_failure()
            self._logger.warning("gateway_server_error", status=response.status_code, path=path)
            raise GatewayUnavailable(self.gateway, f"server error {response.status_code}", response.status_code)

        await self.breaker.record_success()

        if self._is_not_found(response):
            self._logger.info("gateway_not_found", path=path)
            return None

        if response.status_code >= 400:
            raise GatewayRequestError(
                self.gateway, f"request rejected: {response.text[:200]}", response.status_code
            )

        return response.json()


# =============================================================================
# REGISTRY
# =============================================================================

class GatewayRegistry:
    """Resolve the client that owns a ledger row's gateway"""

    def __init__(self, clients: Optional[dict[Gateway, PaymentGatewayClient]] = None):
        self._clients: dict[Gateway, PaymentGatewayClient] = dict(clients or {})

    def register(self, client: PaymentGatewayClient) -> None:
        self._clients[client.gateway] = client

    def get(self, gateway: Gateway) -> PaymentGatewayClient:
        client = self._clients.get(Gateway(gateway))
        if client is None:
            raise KeyError(f"No client registered for gateway: {gateway}")
        return client

    @property
    def supported(self) -> list[Gateway]:
        return list(self._clients.keys())

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
