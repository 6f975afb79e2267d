from datetime import datetime, timedelta

import pytest

from errors import DuplicateEntitlementError
from repositories import InMemoryPaymentRepository
from schemas.payment_models import Payment, PaymentStatus, ProductType


def _payment(order_id, **overrides):
    fields = dict(order_id=order_id, email="a@b.com", product_id="c1", amount=999)
    fields.update(overrides)
    return Payment(**fields)


async def test_second_success_row_for_same_product_is_refused():
    repo = InMemoryPaymentRepository()
    await repo.save(_payment("o1", status=PaymentStatus.SUCCESS))

    with pytest.raises(DuplicateEntitlementError) as exc_info:
        await repo.save(_payment("o2", status=PaymentStatus.RECONCILED))

    assert exc_info.value.existing_order_id == "o1"


async def test_pending_and_failed_duplicates_are_allowed():
    repo = InMemoryPaymentRepository()
    await repo.save(_payment("o1", status=PaymentStatus.SUCCESS))
    await repo.save(_payment("o2"))
    await repo.save(_payment("o3", status=PaymentStatus.FAILED))

    assert (await repo.count_by_status())["Success"] == 1


async def test_same_product_id_different_type_is_independent():
    repo = InMemoryPaymentRepository()
    await repo.save(_payment("o1", status=PaymentStatus.SUCCESS))
    await repo.save(_payment("o2", status=PaymentStatus.SUCCESS, product_type=ProductType.BUNDLE))

    assert await repo.find_entitlement("A@B.com", "c1", ProductType.BUNDLE) is not None


async def test_order_lookup_ignores_bump_rows():
    repo = InMemoryPaymentRepository()
    await repo.save(_payment("o1", product_id="e1", is_order_bump=True, parent_order="o1"))
    parent = await repo.save(_payment("o1"))

    assert (await repo.get_by_order_id("o1")).payment_id == parent.payment_id
    assert len(await repo.list_by_order_id("o1")) == 2
    assert len(await repo.list_by_order_id("o1", include_bumps=False)) == 1


async def test_list_by_status_filters_age_and_bumps():
    repo = InMemoryPaymentRepository()
    old = datetime.utcnow() - timedelta(hours=1)
    await repo.save(_payment("stale", updated_at=old))
    await repo.save(_payment("fresh"))
    await repo.save(_payment("bump", is_order_bump=True, updated_at=old))

    rows = await repo.list_by_status([PaymentStatus.PENDING], older_than=datetime.utcnow() - timedelta(minutes=10))

    assert [r.order_id for r in rows] == ["stale"]
