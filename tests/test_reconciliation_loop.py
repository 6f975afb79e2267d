from datetime import datetime, timedelta

from schemas.payment_models import PaymentStatus
from tasks.reconciliation_loop import ReconciliationLoop, ReconciliationLoopConfig


class FastConfig(ReconciliationLoopConfig):
    CHECK_INTERVAL = 1
    STALE_THRESHOLD = 10
    BATCH_SIZE = 10
    MAX_ATTEMPTS = 2
    ENABLED = True


def _loop(services, minutes_ahead=30):
    later = datetime.utcnow() + timedelta(minutes=minutes_ahead)
    return ReconciliationLoop(services.payments, services.sweep, FastConfig(), clock=lambda: later)


async def test_cycle_reconciles_stale_rows(services, seed_payment, gateway):
    await seed_payment()
    gateway.add_payment("pay_1", "order_1", amount=99900)

    report = await _loop(services).run_cycle()

    assert report.summary.succeeded == 1
    assert (await services.payments.get_by_order_id("order_1")).status == PaymentStatus.RECONCILED


async def test_fresh_rows_are_left_alone(services, seed_payment):
    await seed_payment()

    report = await _loop(services, minutes_ahead=0).run_cycle()

    assert report is None


async def test_repeated_failures_are_escalated(services, seed_payment):
    await seed_payment()
    loop = _loop(services)

    await loop.run_cycle()
    await loop.run_cycle()
    third = await loop.run_cycle()

    assert third is None
    stats = loop.get_stats()
    assert stats["escalated"] == 1
    assert stats["escalated_orders"] == ["order_1"]
    assert stats["cycles"] == 3
    assert stats["errors"] == 2


async def test_disabled_loop_returns_immediately(services):
    class Disabled(FastConfig):
        ENABLED = False

    loop = ReconciliationLoop(services.payments, services.sweep, Disabled())
    await loop.run_forever()

    assert loop.get_stats()["cycles"] == 0


async def test_duplicate_capture_does_not_starve_newer_orders(services, seed_payment, gateway):
    class OneAtATime(FastConfig):
        BATCH_SIZE = 1

    earlier = datetime.utcnow() - timedelta(hours=2)
    await seed_payment(order_id="order_0", status=PaymentStatus.SUCCESS, created_at=earlier)
    await seed_payment(order_id="order_1", created_at=earlier + timedelta(minutes=1))
    await seed_payment(order_id="order_2", email="other@example.com", created_at=earlier + timedelta(minutes=2))
    gateway.add_payment("pay_1", "order_1", amount=99900)
    gateway.add_payment("pay_2", "order_2", amount=99900)

    later = datetime.utcnow() + timedelta(minutes=30)
    loop = ReconciliationLoop(services.payments, services.sweep, OneAtATime(), clock=lambda: later)
    for _ in range(4):
        await loop.run_cycle()

    duplicate = await services.payments.get_by_order_id("order_1")
    assert duplicate.status == PaymentStatus.FAILED
    assert duplicate.failure_reason.startswith("Duplicate purchase")
    assert (await services.payments.get_by_order_id("order_2")).status == PaymentStatus.RECONCILED
    assert loop.get_stats()["escalated_orders"] == ["order_1"]
