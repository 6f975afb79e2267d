from errors import AmountMismatchError
from pipeline.failed_payment_log import FailedPaymentLog
from repositories import InMemoryFailedPaymentRepository
from schemas.payment_models import FailureContext, Payment


class ExplodingRepository(InMemoryFailedPaymentRepository):
    async def save(self, entity):
        raise ConnectionError("database gone")


def _payment():
    return Payment(order_id="order_1", email="a@b.com", product_id="c1", amount=999, gateway_payment_id="pay_1")


async def test_record_captures_payment_and_exception_details():
    log = FailedPaymentLog(InMemoryFailedPaymentRepository())
    try:
        raise AmountMismatchError("Razorpay", 50000, 999)
    except AmountMismatchError as e:
        record = await log.record(e, FailureContext.ORDER_VERIFICATION, payment=_payment(), gateway_amount=500)

    assert record.order_id == "order_1"
    assert record.error == "Amount mismatch (Razorpay: 500, DB: 999)"
    assert record.error_code == "AMOUNT_MISMATCH"
    assert "AmountMismatchError" in record.stack_trace
    assert record.gateway_payment_id == "pay_1"
    assert record.customer.email == "a@b.com"
    assert record.resolved is False


async def test_invalid_context_is_coerced():
    log = FailedPaymentLog(InMemoryFailedPaymentRepository())

    record = await log.record("boom", "not_a_context", order_id="order_1")

    assert record.context == FailureContext.OTHER


async def test_record_never_raises():
    log = FailedPaymentLog(ExplodingRepository())

    assert await log.record(RuntimeError("boom"), payment=_payment()) is None


async def test_resolve_for_order_only_touches_open_records():
    repo = InMemoryFailedPaymentRepository()
    log = FailedPaymentLog(repo)
    first = await log.record("a", order_id="order_1")
    await log.record("b", order_id="order_1")
    await log.record("c", order_id="order_2")
    await log.resolve(first.failed_payment_id, "handled")

    changed = await log.resolve_for_order("order_1", "Automatically reconciled with payment pay_1")

    assert changed == 1
    _, total = await log.list_unresolved()
    assert total == 1
    assert (await repo.get(first.failed_payment_id)).resolution_notes == "handled"
