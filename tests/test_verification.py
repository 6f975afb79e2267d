import hashlib
import hmac

import httpx
import pytest

from errors import PaymentNotFoundError, PaymentValidationError
from gateways import GatewayRegistry, GatewayUnavailable, RazorpayClient
from schemas.payment_models import FailureContext, Gateway, PaymentStatus


async def test_captured_payment_with_matching_amount_succeeds(services, seed_payment, gateway, mailer):
    await seed_payment(amount=999)
    gateway.add_payment("pay_1", "order_1", amount=99900)

    result = await services.verifier.verify_payment("order_1", "pay_1")

    assert result.success is True
    assert result.status == "success"
    assert result.payment.status == PaymentStatus.SUCCESS
    assert result.payment.gateway_payment_id == "pay_1"
    assert result.reset_link is not None
    assert len(mailer.sent) == 1


async def test_amount_mismatch_marks_failed(services, seed_payment, gateway, mailer):
    await seed_payment(amount=999)
    gateway.add_payment("pay_1", "order_1", amount=50000)

    result = await services.verifier.verify_payment("order_1", "pay_1")

    assert result.success is False
    assert result.reason == "Amount mismatch (Razorpay: 500, DB: 999)"
    stored = await services.payments.get_by_order_id("order_1")
    assert stored.status == PaymentStatus.FAILED
    assert await services.users.get_by_email("buyer@example.com") is None
    assert mailer.sent == []

    rows, _ = await services.failed_log.list_unresolved()
    assert rows[0].context == FailureContext.ORDER_VERIFICATION
    assert rows[0].gateway_amount == 500


async def test_order_mismatch_marks_failed(services, seed_payment, gateway):
    await seed_payment()
    gateway.add_payment("pay_1", "order_other", amount=99900)

    result = await services.verifier.verify_payment("order_1", "pay_1")

    assert result.success is False
    assert result.reason.startswith("Order mismatch")
    assert (await services.payments.get_by_order_id("order_1")).status == PaymentStatus.FAILED


async def test_authorized_payment_is_not_fulfilled(services, seed_payment, gateway):
    await seed_payment()
    gateway.add_payment("pay_1", "order_1", amount=99900, status="authorized")

    result = await services.verifier.verify_payment("order_1", "pay_1")

    assert result.success is False
    assert result.reason == "Razorpay status: authorized"
    assert (await services.payments.get_by_order_id("order_1")).status == PaymentStatus.PENDING


async def test_gateway_failed_status_flips_row(services, seed_payment, gateway):
    await seed_payment()
    gateway.add_payment("pay_1", "order_1", amount=99900, status="failed")

    result = await services.verifier.verify_payment("order_1", "pay_1")

    assert result.gateway_status == "failed"
    assert (await services.payments.get_by_order_id("order_1")).status == PaymentStatus.FAILED


async def test_unknown_gateway_payment_fails(services, seed_payment):
    await seed_payment()

    result = await services.verifier.verify_payment("order_1", "pay_missing")

    assert result.success is False
    assert result.reason == "Payment not found in Razorpay"


async def test_gateway_outage_leaves_ledger_untouched(services, seed_payment, gateway):
    await seed_payment()
    gateway.unavailable = True

    with pytest.raises(GatewayUnavailable):
        await services.verifier.verify_payment("order_1", "pay_1")

    assert (await services.payments.get_by_order_id("order_1")).status == PaymentStatus.PENDING


async def test_already_paid_short_circuits(services, seed_payment, gateway):
    await seed_payment(status=PaymentStatus.SUCCESS)

    result = await services.verifier.verify_payment("order_1", "pay_1")

    assert result.status == "already_paid"
    assert gateway.fetch_calls == 0


async def test_missing_row_raises(services):
    with pytest.raises(PaymentNotFoundError):
        await services.verifier.verify_payment("order_nope", "pay_1")


async def test_missing_parameters_raise(services):
    with pytest.raises(PaymentValidationError):
        await services.verifier.verify_payment("", "pay_1")


async def test_unregistered_gateway_is_rejected(services, seed_payment):
    await seed_payment(gateway=Gateway.CASHFREE)

    with pytest.raises(PaymentValidationError):
        await services.verifier.verify_payment("order_1", "pay_1")


async def test_verify_grants_bumps_charged_at_checkout(services, seed_payment, gateway):
    await seed_payment(amount=1198, requested_bumps=["bump-1"])
    gateway.add_payment("pay_1", "order_1", amount=119800)

    result = await services.verifier.verify_payment("order_1", "pay_1", order_bumps=["bump-1"])

    assert result.success is True
    assert [b.product_id for b in result.payment.order_bumps] == ["ebook-1"]


def _signature(secret: str, order_id: str, payment_id: str) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


@pytest.fixture
def razorpay_services(services):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/payments/pay_1"
        return httpx.Response(200, json={
            "id": "pay_1", "order_id": "order_1", "status": "captured",
            "amount": 99900, "currency": "INR", "method": "card", "created_at": 1700000000,
        })

    client = RazorpayClient(
        key_id="rzp_test",
        key_secret="secret",
        client=httpx.AsyncClient(
            base_url="https://api.razorpay.com/v1",
            transport=httpx.MockTransport(handler),
        ),
    )
    registry = GatewayRegistry({Gateway.RAZORPAY: client})
    services.verifier.gateways = registry
    return services


async def test_valid_signature_is_accepted(razorpay_services, seed_payment):
    await seed_payment()

    result = await razorpay_services.verifier.verify_payment(
        "order_1", "pay_1", signature=_signature("secret", "order_1", "pay_1"),
    )

    assert result.success is True


async def test_bad_signature_fails_without_mutation(razorpay_services, seed_payment):
    await seed_payment()

    result = await razorpay_services.verifier.verify_payment("order_1", "pay_1", signature="forged")

    assert result.success is False
    assert result.reason == "Invalid payment signature"
    assert (await razorpay_services.payments.get_by_order_id("order_1")).status == PaymentStatus.PENDING


async def test_checkout_bumps_are_granted_without_callback_list(services, seed_payment, gateway):
    await seed_payment(amount=1198, requested_bumps=["bump-1"])
    gateway.add_payment("pay_1", "order_1", amount=119800)

    result = await services.verifier.verify_payment("order_1", "pay_1")

    assert [b.product_id for b in result.payment.order_bumps] == ["ebook-1"]


async def test_bumps_outside_checkout_order_are_rejected(services, seed_payment, gateway, mailer):
    await seed_payment(amount=999)
    gateway.add_payment("pay_1", "order_1", amount=99900)

    with pytest.raises(PaymentValidationError):
        await services.verifier.verify_payment("order_1", "pay_1", order_bumps=["bump-1", {"product_id": "ebook-2"}])

    rows = await services.payments.list_by_order_id("order_1")
    assert [r.is_order_bump for r in rows] == [False]
    assert rows[0].status == PaymentStatus.PENDING
    assert gateway.fetch_calls == 0
    assert mailer.sent == []
