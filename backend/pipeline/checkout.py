"""
Checkout
========
Opens a gateway order for a product plus any selected bumps and records
the Pending ledger row that verification and reconciliation later settle.
"""

import uuid
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from config import settings
from errors import PaymentValidationError, ProductNotFoundError
from gateways.base import GatewayRegistry
from pipeline.fulfillment import BumpRef
from repositories.interfaces import IOrderBumpRepository, IPaymentRepository, IProductCatalog
from schemas.payment_models import Customer, Gateway, OrderBump, Payment, ProductType


class CheckoutSession(BaseModel):
    """What the storefront needs to open the gateway's checkout widget"""
    order_id: str
    gateway: Gateway
    session_ref: str
    amount: float
    currency: str
    payment_id: str
    bump_ids: list[str] = Field(default_factory=list)


class CheckoutService:

    def __init__(
        self,
        payments: IPaymentRepository,
        catalog: IProductCatalog,
        order_bumps: IOrderBumpRepository,
        gateways: GatewayRegistry,
        currency: str = settings.DEFAULT_CURRENCY,
    ):
        self.payments = payments
        self.catalog = catalog
        self.order_bumps = order_bumps
        self.gateways = gateways
        self.currency = currency
        self._logger = structlog.get_logger().bind(component="checkout")

    async def create_order(
        self,
        gateway: Gateway,
        product_id: str,
        product_type: ProductType,
        customer: Customer,
        order_bumps: Optional[list[BumpRef]] = None,
    ) -> CheckoutSession:
        if not product_id or not customer.email:
            raise PaymentValidationError("Missing required checkout parameters")

        try:
            client = self.gateways.get(gateway)
        except KeyError as e:
            raise PaymentValidationError(f"Unsupported gateway: {gateway}") from e

        product = await self.catalog.get_product(product_id, product_type)
        if product is None:
            raise ProductNotFoundError(f"{product_type.value} {product_id} not found")

        bumps = await self._select_bumps(product_id, order_bumps or [])
        amount = round(product.price + sum(b.bump_price for b in bumps), 2)
        if amount <= 0:
            raise PaymentValidationError("Order amount must be positive")

        receipt = f"rcpt_{uuid.uuid4().hex[:16]}"
        order = await client.create_order(int(round(amount * 100)), self.currency, customer, receipt)

        payment = await self.payments.save(Payment(
            order_id=order.order_id,
            gateway=gateway,
            username=customer.username,
            email=customer.email,
            phone=customer.phone,
            product_id=product_id,
            product_type=product_type,
            amount=amount,
            currency=self.currency,
            requested_bumps=[b.bump_id for b in bumps],
        ))

        self._logger.info("checkout_order_created",
                          order_id=order.order_id,
                          gateway=Gateway(gateway).value,
                          amount=amount,
                          bumps=len(bumps))
        return CheckoutSession(
            order_id=order.order_id,
            gateway=gateway,
            session_ref=order.session_ref,
            amount=amount,
            currency=self.currency,
            payment_id=payment.payment_id,
            bump_ids=payment.requested_bumps,
        )

    async def _select_bumps(self, product_id: str, refs: list[BumpRef]) -> list[OrderBump]:
        if not refs:
            return []
        wanted_ids = {r for r in refs if isinstance(r, str)}
        wanted_products = {r.get("product_id") for r in refs if isinstance(r, dict)}
        return [
            b for b in await self.order_bumps.list_for_target(product_id)
            if b.is_active and (b.bump_id in wanted_ids or b.bump_product in wanted_products)
        ]
