"""Shared fixtures: in-memory services, a scriptable gateway and recording emitters."""

from typing import Optional

import pytest

from gateways.base import GatewayRegistry, GatewayUnavailable, PaymentGatewayClient
from pipeline.container import PaymentServices
from repositories import InMemoryOrderBumpRepository, InMemoryProductCatalog
from schemas.payment_models import (
    Course,
    Customer,
    DigitalProduct,
    Gateway,
    GatewayOrder,
    GatewayPayment,
    OrderBump,
    Payment,
    ProductType,
)
from services.mailer import EmailDeliveryError


BUYER_EMAIL = "buyer@example.com"


class FakeGateway(PaymentGatewayClient):
    """Gateway client backed by a dict; flip ``unavailable`` to simulate an outage"""

    def __init__(self, gateway: Gateway = Gateway.RAZORPAY):
        self.gateway = gateway
        super().__init__(base_url="https://gateway.test")
        self.payments: dict[str, GatewayPayment] = {}
        self.created_orders: list[GatewayOrder] = []
        self.unavailable = False
        self.fetch_calls = 0

    def add_payment(self, payment_id: str, order_id: str, amount: int, status: str = "captured") -> GatewayPayment:
        payment = GatewayPayment(
            gateway=self.gateway,
            payment_id=payment_id,
            order_id=order_id,
            status=status,
            amount=amount,
            method="upi",
        )
        self.payments[payment_id] = payment
        return payment

    def _check(self):
        self.fetch_calls += 1
        if self.unavailable:
            raise GatewayUnavailable(self.gateway, "provider down")

    async def fetch_payment(self, payment_id: str, order_id: Optional[str] = None):
        self._check()
        return self.payments.get(payment_id)

    async def fetch_payments_by_order(self, order_id: str):
        self._check()
        return [p for p in self.payments.values() if p.order_id == order_id]

    async def create_order(self, amount_minor, currency, customer, receipt=None):
        self._check()
        order = GatewayOrder(
            gateway=self.gateway,
            order_id=f"order_{len(self.created_orders) + 1}",
            amount=amount_minor,
            currency=currency,
            receipt=receipt,
            session_ref=f"session_{len(self.created_orders) + 1}",
        )
        self.created_orders.append(order)
        return order


class RecordingInvoiceRenderer:
    def __init__(self):
        self.rendered = []
        self.fail = False

    async def render(self, payment, product_title):
        if self.fail:
            raise OSError("disk full")
        self.rendered.append((payment.order_id, product_title))
        return f"/tmp/invoice_{payment.order_id}.pdf"


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_purchase_confirmation(self, to_email, payment, product_title, invoice_path=None, reset_link=None):
        if self.fail:
            raise EmailDeliveryError("SendGrid returned 500")
        self.sent.append({
            "to": to_email,
            "order_id": payment.order_id,
            "title": product_title,
            "invoice_path": invoice_path,
            "reset_link": reset_link,
        })


class RecordingTracker:
    def __init__(self):
        self.events = []

    async def track_purchase(self, payment, product_id, product_title, bump_ids=()):
        self.events.append((payment.order_id, product_id, list(bump_ids)))
        return True

    async def close(self):
        pass


@pytest.fixture
def course():
    return Course(id="course-1", title="Python Foundations", regular_price=1499, sales_price=999)


@pytest.fixture
def ebooks():
    return [
        DigitalProduct(id="ebook-1", title="Cheat Sheet", sales_price=199, file_url="https://cdn.test/cheat.pdf"),
        DigitalProduct(id="ebook-2", title="Interview Kit", sales_price=299, external_url="https://kit.test"),
    ]


@pytest.fixture
def bumps():
    return [
        OrderBump(bump_id="bump-1", target_product="course-1", bump_product="ebook-1",
                  display_name="Cheat Sheet Add-on", bump_price=199),
        OrderBump(bump_id="bump-2", target_product="course-1", bump_product="ebook-2",
                  display_name="Interview Kit Add-on", bump_price=299),
        OrderBump(bump_id="bump-off", target_product="course-1", bump_product="ebook-2",
                  display_name="Retired Offer", bump_price=99, is_active=False),
    ]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def services(course, ebooks, bumps, gateway):
    return PaymentServices.in_memory(
        gateways=GatewayRegistry({Gateway.RAZORPAY: gateway}),
        catalog=InMemoryProductCatalog([course, *ebooks]),
        order_bumps=InMemoryOrderBumpRepository(bumps),
        invoices=RecordingInvoiceRenderer(),
        mailer=RecordingMailer(),
        tracker=RecordingTracker(),
    )


@pytest.fixture
def mailer(services):
    return services.orchestrator.mailer


@pytest.fixture
def tracker(services):
    return services.orchestrator.tracker


@pytest.fixture
def seed_payment(services):
    async def _seed(order_id: str = "order_1", **overrides) -> Payment:
        fields = dict(
            order_id=order_id,
            gateway=Gateway.RAZORPAY,
            username="Asha",
            email=BUYER_EMAIL,
            phone="9876543210",
            product_id="course-1",
            product_type=ProductType.COURSE,
            amount=999,
        )
        fields.update(overrides)
        return await services.payments.save(Payment(**fields))
    return _seed


@pytest.fixture
def customer():
    return Customer(email=BUYER_EMAIL, username="Asha", phone="9876543210")
