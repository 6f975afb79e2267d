"""
In-Memory Repositories
======================
asyncio.Lock-guarded dict stores. Used by tests and single-process demos;
swap for repositories.postgres in production.
"""

import asyncio
from datetime import datetime
from typing import Iterable, Optional

from errors import DuplicateEntitlementError
from repositories.interfaces import (
    IContactRepository,
    IFailedPaymentRepository,
    IOrderBumpRepository,
    IPaymentRepository,
    IProductCatalog,
    ITagRepository,
    IUserRepository,
)
from schemas.payment_models import (
    SUCCESS_STATUSES,
    Contact,
    FailedPayment,
    OrderBump,
    Payment,
    PaymentStatus,
    Product,
    ProductType,
    Tag,
    User,
)


class InMemoryPaymentRepository(IPaymentRepository):
    """Ledger store; enforces one success-like row per (email, product)"""

    def __init__(self):
        self._payments: dict[str, Payment] = {}
        self._lock = asyncio.Lock()

    async def get(self, id: str) -> Optional[Payment]:
        async with self._lock:
            return self._payments.get(id)

    async def save(self, entity: Payment) -> Payment:
        async with self._lock:
            if entity.status in SUCCESS_STATUSES:
                for other in self._payments.values():
                    if (
                        other.payment_id != entity.payment_id
                        and other.status in SUCCESS_STATUSES
                        and other.email == entity.email
                        and other.product_id == entity.product_id
                        and other.product_type == entity.product_type
                    ):
                        raise DuplicateEntitlementError(
                            entity.email, entity.product_id, other.order_id
                        )
            self._payments[entity.payment_id] = entity
            return entity

    async def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        async with self._lock:
            for payment in self._payments.values():
                if payment.order_id == order_id and not payment.is_order_bump:
                    return payment
            return None

    async def list_by_order_id(self, order_id: str, include_bumps: bool = True) -> list[Payment]:
        async with self._lock:
            return [
                p for p in self._payments.values()
                if p.order_id == order_id and (include_bumps or not p.is_order_bump)
            ]

    async def find_entitlement(
        self,
        email: str,
        product_id: str,
        product_type: ProductType,
        exclude_payment_id: Optional[str] = None,
    ) -> Optional[Payment]:
        email = email.strip().lower()
        async with self._lock:
            for payment in self._payments.values():
                if (
                    payment.payment_id != exclude_payment_id
                    and payment.status in SUCCESS_STATUSES
                    and payment.email == email
                    and payment.product_id == product_id
                    and payment.product_type == product_type
                ):
                    return payment
            return None

    async def list_by_status(
        self,
        statuses: Iterable[PaymentStatus],
        older_than: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Payment]:
        wanted = set(statuses)
        async with self._lock:
            rows = [
                p for p in self._payments.values()
                if p.status in wanted
                and not p.is_order_bump
                and (older_than is None or p.updated_at <= older_than)
            ]
        rows.sort(key=lambda p: p.created_at)
        return rows[:limit]

    async def count_by_status(self) -> dict[str, int]:
        async with self._lock:
            counts = {s.value: 0 for s in PaymentStatus}
            for payment in self._payments.values():
                counts[payment.status.value] += 1
            return counts


class InMemoryFailedPaymentRepository(IFailedPaymentRepository):
    """Append-only failure log"""

    def __init__(self):
        self._records: dict[str, FailedPayment] = {}
        self._lock = asyncio.Lock()

    async def get(self, id: str) -> Optional[FailedPayment]:
        async with self._lock:
            return self._records.get(id)

    async def save(self, entity: FailedPayment) -> FailedPayment:
        async with self._lock:
            self._records[entity.failed_payment_id] = entity
            return entity

    async def list_by_order_id(self, order_id: str, unresolved_only: bool = False) -> list[FailedPayment]:
        async with self._lock:
            return [
                r for r in self._records.values()
                if r.order_id == order_id and not (unresolved_only and r.resolved)
            ]

    async def list_unresolved(self, offset: int = 0, limit: int = 20) -> list[FailedPayment]:
        async with self._lock:
            rows = [r for r in self._records.values() if not r.resolved]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def count_unresolved(self) -> int:
        async with self._lock:
            return sum(1 for r in self._records.values() if not r.resolved)


class InMemoryUserRepository(IUserRepository):

    def __init__(self):
        self._users: dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def get(self, id: str) -> Optional[User]:
        async with self._lock:
            return self._users.get(id)

    async def save(self, entity: User) -> User:
        async with self._lock:
            self._users[entity.user_id] = entity
            return entity

    async def get_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        async with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return user
            return None


class InMemoryContactRepository(IContactRepository):

    def __init__(self):
        self._contacts: dict[str, Contact] = {}
        self._lock = asyncio.Lock()

    async def get(self, id: str) -> Optional[Contact]:
        async with self._lock:
            return self._contacts.get(id)

    async def save(self, entity: Contact) -> Contact:
        async with self._lock:
            self._contacts[entity.contact_id] = entity
            return entity

    async def get_by_email(self, email: str) -> Optional[Contact]:
        email = email.strip().lower()
        async with self._lock:
            for contact in self._contacts.values():
                if contact.email == email:
                    return contact
            return None


class InMemoryTagRepository(ITagRepository):

    def __init__(self):
        self._tags: dict[str, Tag] = {}
        self._lock = asyncio.Lock()

    async def get(self, id: str) -> Optional[Tag]:
        async with self._lock:
            return self._tags.get(id)

    async def save(self, entity: Tag) -> Tag:
        async with self._lock:
            self._tags[entity.tag_id] = entity
            return entity

    async def get_by_name(self, name: str) -> Optional[Tag]:
        async with self._lock:
            for tag in self._tags.values():
                if tag.name == name:
                    return tag
            return None


class InMemoryProductCatalog(IProductCatalog):
    """Seedable catalog keyed by (product_type, id)"""

    def __init__(self, products: Iterable[Product] = ()):
        self._products: dict[tuple[ProductType, str], Product] = {}
        for product in products:
            self.add(product)

    def add(self, product: Product) -> None:
        self._products[(product.product_type, product.id)] = product

    async def get_product(self, product_id: str, product_type: ProductType) -> Optional[Product]:
        return self._products.get((ProductType(product_type), product_id))


class InMemoryOrderBumpRepository(IOrderBumpRepository):

    def __init__(self, bumps: Iterable[OrderBump] = ()):
        self._bumps: dict[str, OrderBump] = {b.bump_id: b for b in bumps}
        self._lock = asyncio.Lock()

    async def get(self, id: str) -> Optional[OrderBump]:
        async with self._lock:
            return self._bumps.get(id)

    async def save(self, entity: OrderBump) -> OrderBump:
        async with self._lock:
            self._bumps[entity.bump_id] = entity
            return entity

    async def get_by_bump_product(self, product_id: str) -> Optional[OrderBump]:
        async with self._lock:
            matches = [b for b in self._bumps.values() if b.bump_product == product_id]
        # Active offers win over retired ones for the same product
        matches.sort(key=lambda b: not b.is_active)
        return matches[0] if matches else None

    async def list_for_target(self, target_product: str) -> list[OrderBump]:
        async with self._lock:
            return [b for b in self._bumps.values() if b.target_product == target_product]

    async def increment_conversions(self, bump_id: str) -> None:
        async with self._lock:
            bump = self._bumps.get(bump_id)
            if bump:
                self._bumps[bump_id] = bump.model_copy(update={"conversions": bump.conversions + 1})
