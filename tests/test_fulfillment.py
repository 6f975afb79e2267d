import asyncio

import pytest

from errors import EntitlementError, PaymentValidationError, ProductNotFoundError
from gateways.base import GatewayRegistry
from pipeline.container import PaymentServices
from pipeline.fulfillment import FulfillmentRequest
from repositories import InMemoryOrderBumpRepository, InMemoryProductCatalog, InMemoryUserRepository
from schemas.payment_models import (
    ContactStatus,
    CourseSnapshot,
    FailureContext,
    Gateway,
    Payment,
    PaymentStatus,
    User,
)
from schemas.results import FulfillmentStatus

from conftest import BUYER_EMAIL, RecordingInvoiceRenderer, RecordingMailer, RecordingTracker


async def test_new_buyer_is_entitled_and_notified(services, seed_payment, mailer, tracker):
    payment = await seed_payment()

    result = await services.orchestrator.fulfill(
        FulfillmentRequest(payment=payment, gateway_payment_id="pay_1", amount=999)
    )

    assert result.status == FulfillmentStatus.SUCCESS
    assert result.notify_failures == []

    stored = await services.payments.get(payment.payment_id)
    assert stored.status == PaymentStatus.SUCCESS
    assert stored.gateway_payment_id == "pay_1"
    assert stored.paid_at is not None
    assert isinstance(stored.product_snapshot, CourseSnapshot)
    assert stored.product_snapshot.title == "Python Foundations"

    user = await services.users.get_by_email(BUYER_EMAIL)
    assert user.orders == ["order_1"]
    assert user.reset_token_hash is not None

    assert result.reset_link.startswith("http://localhost:3000/set-password?token=")
    assert len(mailer.sent) == 1
    assert mailer.sent[0]["reset_link"] == result.reset_link
    assert mailer.sent[0]["invoice_path"].endswith("invoice_order_1.pdf")
    assert tracker.events == [("order_1", "course-1", [])]

    contact = await services.contacts.get_by_email(BUYER_EMAIL)
    assert contact.status_tag == ContactStatus.SUCCESS.value


async def test_existing_user_gets_no_reset_link(services, seed_payment, mailer):
    await services.users.save(User(email=BUYER_EMAIL, username="Asha", orders=["older_order"]))
    payment = await seed_payment()

    result = await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert result.reset_link is None
    assert mailer.sent[0]["reset_link"] is None
    user = await services.users.get_by_email(BUYER_EMAIL)
    assert user.orders == ["older_order", "order_1"]


async def test_already_paid_row_is_not_fulfilled_twice(services, seed_payment, mailer):
    payment = await seed_payment(status=PaymentStatus.SUCCESS)

    result = await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert result.status == FulfillmentStatus.ALREADY_PAID
    assert mailer.sent == []


async def test_duplicate_entitlement_returns_already_paid(services, seed_payment, mailer):
    await seed_payment(order_id="order_old", status=PaymentStatus.SUCCESS)
    payment = await seed_payment(order_id="order_new")

    result = await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert result.status == FulfillmentStatus.ALREADY_PAID
    assert result.payment.order_id == "order_old"
    assert mailer.sent == []

    duplicate = await services.payments.get(payment.payment_id)
    assert duplicate.status == PaymentStatus.FAILED
    assert duplicate.failure_reason == "Duplicate purchase: already entitled via order order_old"

    rows, _ = await services.failed_log.list_unresolved()
    assert [(r.order_id, r.error_code, r.context) for r in rows] == [
        ("order_new", "DUPLICATE_ENTITLEMENT", FailureContext.PAYMENT_PROCESSING),
    ]


async def test_repeated_duplicate_is_logged_once(services, seed_payment):
    await seed_payment(order_id="order_old", status=PaymentStatus.SUCCESS)
    payment = await seed_payment(order_id="order_new")

    await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))
    await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    rows, _ = await services.failed_log.list_unresolved()
    assert len(rows) == 1


async def test_concurrent_triggers_fulfill_once(services, seed_payment, mailer):
    payment = await seed_payment()
    request = FulfillmentRequest(payment=payment, gateway_payment_id="pay_1")

    results = await asyncio.gather(
        services.orchestrator.fulfill(request),
        services.orchestrator.fulfill(request),
    )

    statuses = sorted(r.status.value for r in results)
    assert statuses == ["already_paid", "success"]
    assert len(mailer.sent) == 1
    user = await services.users.get_by_email(BUYER_EMAIL)
    assert user.orders == ["order_1"]
    assert services.orchestrator._order_locks == {}


async def test_order_locks_are_released_after_fulfillment(services, seed_payment):
    for n in range(5):
        payment = await seed_payment(order_id=f"order_{n}", email=f"buyer{n}@example.com")
        await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert services.orchestrator._order_locks == {}
    assert services.orchestrator._order_lock_users == {}


async def test_bump_fan_out_skips_invalid_bumps(services, seed_payment):
    payment = await seed_payment(amount=999 + 199 + 299)

    result = await services.orchestrator.fulfill(FulfillmentRequest(
        payment=payment,
        order_bumps=["bump-1", {"product_id": "ebook-2"}, "bump-missing"],
    ))

    assert result.status == FulfillmentStatus.SUCCESS
    rows = await services.payments.list_by_order_id("order_1")
    bump_rows = [r for r in rows if r.is_order_bump]
    assert len(bump_rows) == 2
    assert {r.product_id for r in bump_rows} == {"ebook-1", "ebook-2"}
    assert all(r.status == PaymentStatus.SUCCESS for r in bump_rows)
    assert all(r.parent_order == "order_1" for r in bump_rows)

    parent = await services.payments.get_by_order_id("order_1")
    assert parent.status == PaymentStatus.SUCCESS
    assert sorted(b.amount for b in parent.order_bumps) == [199, 299]

    assert (await services.order_bumps.get("bump-1")).conversions == 1


async def test_inactive_bump_is_skipped(services, seed_payment):
    payment = await seed_payment()

    result = await services.orchestrator.fulfill(
        FulfillmentRequest(payment=payment, order_bumps=["bump-off"])
    )

    assert result.bump_payments == []
    assert [r for r in await services.payments.list_by_order_id("order_1") if r.is_order_bump] == []


async def test_requested_bumps_are_used_when_request_has_none(services, seed_payment):
    payment = await seed_payment(requested_bumps=["bump-1"])

    result = await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert [b.product_id for b in result.bump_payments] == ["ebook-1"]


async def test_missing_product_leaves_ledger_untouched(services, seed_payment):
    payment = await seed_payment(product_id="course-gone")

    with pytest.raises(ProductNotFoundError):
        await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert (await services.payments.get(payment.payment_id)).status == PaymentStatus.PENDING
    rows, total = await services.failed_log.list_unresolved()
    assert total == 1
    assert rows[0].order_id == "order_1"


async def test_missing_email_is_rejected_without_side_effects(services, seed_payment, mailer):
    payment = await seed_payment(email="")

    with pytest.raises(PaymentValidationError):
        await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert mailer.sent == []
    assert (await services.failed_log.list_unresolved())[1] == 0


class BrokenUserRepository(InMemoryUserRepository):
    async def save(self, entity):
        raise RuntimeError("users table unavailable")


async def test_commit_failure_flips_row_to_failed(course, ebooks, bumps, gateway):
    services = PaymentServices.in_memory(
        gateways=GatewayRegistry({Gateway.RAZORPAY: gateway}),
        users=BrokenUserRepository(),
        catalog=InMemoryProductCatalog([course, *ebooks]),
        order_bumps=InMemoryOrderBumpRepository(bumps),
        invoices=RecordingInvoiceRenderer(),
        mailer=RecordingMailer(),
        tracker=RecordingTracker(),
    )
    payment = await services.payments.save(Payment(
        order_id="order_1", email=BUYER_EMAIL, product_id="course-1", amount=999,
    ))

    with pytest.raises(EntitlementError) as exc_info:
        await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert exc_info.value.order_id == "order_1"
    stored = await services.payments.get(payment.payment_id)
    assert stored.status == PaymentStatus.FAILED
    assert stored.failure_reason == "users table unavailable"

    rows, _ = await services.failed_log.list_unresolved()
    assert rows[0].context == FailureContext.USER_CREATION

    contact = await services.contacts.get_by_email(BUYER_EMAIL)
    assert contact.status_tag == ContactStatus.FAILED.value
    assert services.orchestrator.mailer.sent == []


async def test_email_failure_does_not_undo_entitlement(services, seed_payment, mailer):
    mailer.fail = True
    payment = await seed_payment()

    result = await services.orchestrator.fulfill(FulfillmentRequest(payment=payment))

    assert result.status == FulfillmentStatus.SUCCESS
    assert [f.step for f in result.notify_failures] == ["invoice_email"]
    assert (await services.payments.get(payment.payment_id)).status == PaymentStatus.SUCCESS

    rows, _ = await services.failed_log.list_unresolved()
    assert [r.context for r in rows] == [FailureContext.EMAIL_SENDING]


async def test_reconciled_terminal_status(services, seed_payment):
    payment = await seed_payment(status=PaymentStatus.FAILED)

    result = await services.orchestrator.fulfill(
        FulfillmentRequest(payment=payment, gateway_payment_id="pay_9"),
        terminal_status=PaymentStatus.RECONCILED,
    )

    assert result.payment.status == PaymentStatus.RECONCILED
    assert result.payment.previous_status == PaymentStatus.FAILED
    assert result.payment.reconciled_at is not None
    user = await services.users.get_by_email(BUYER_EMAIL)
    assert user.reconciled_payments == 1
    contact = await services.contacts.get_by_email(BUYER_EMAIL)
    assert contact.status_tag == ContactStatus.RECONCILED.value
