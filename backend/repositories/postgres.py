"""
Postgres Repositories
=====================
asyncpg-backed implementations of the persistence interfaces. Documents
are stored as JSONB; filter columns are kept alongside them.

pip install asyncpg
"""

from datetime import datetime
from typing import Iterable, Optional

import asyncpg
from pydantic import TypeAdapter

from database import Database
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

_product_adapter = TypeAdapter(Product)


def _load_payment(row) -> Optional[Payment]:
    return Payment.model_validate_json(row["data"]) if row else None


class PostgresPaymentRepository(IPaymentRepository):

    def __init__(self, db=Database):
        self._db = db

    async def get(self, id: str) -> Optional[Payment]:
        row = await self._db.fetch_one("SELECT data FROM payments WHERE payment_id = $1", id)
        return _load_payment(row)

    async def save(self, entity: Payment) -> Payment:
        try:
            await self._db.execute(
                """
                INSERT INTO payments
                (payment_id, order_id, email, product_id, product_type, status,
                 is_order_bump, data, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10)
                ON CONFLICT (payment_id) DO UPDATE SET
                    order_id = EXCLUDED.order_id,
                    email = EXCLUDED.email,
                    product_id = EXCLUDED.product_id,
                    product_type = EXCLUDED.product_type,
                    status = EXCLUDED.status,
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                entity.payment_id,
                entity.order_id,
                entity.email,
                entity.product_id,
                entity.product_type.value,
                entity.status.value,
                entity.is_order_bump,
                entity.model_dump_json(),
                entity.created_at,
                entity.updated_at,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateEntitlementError(entity.email, entity.product_id)
        return entity

    async def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        row = await self._db.fetch_one(
            """
            SELECT data FROM payments
            WHERE order_id = $1 AND is_order_bump = FALSE
            ORDER BY created_at
            LIMIT 1
            """,
            order_id,
        )
        return _load_payment(row)

    async def list_by_order_id(self, order_id: str, include_bumps: bool = True) -> list[Payment]:
        rows = await self._db.fetch_all(
            """
            SELECT data FROM payments
            WHERE order_id = $1 AND ($2 OR is_order_bump = FALSE)
            ORDER BY created_at
            """,
            order_id,
            include_bumps,
        )
        return [_load_payment(r) for r in rows]

    async def find_entitlement(
        self,
        email: str,
        product_id: str,
        product_type: ProductType,
        exclude_payment_id: Optional[str] = None,
    ) -> Optional[Payment]:
        row = await self._db.fetch_one(
            """
            SELECT data FROM payments
            WHERE email = $1 AND product_id = $2 AND product_type = $3
              AND status = ANY($4::text[])
              AND ($5::text IS NULL OR payment_id <> $5)
            LIMIT 1
            """,
            email.strip().lower(),
            product_id,
            ProductType(product_type).value,
            [s.value for s in SUCCESS_STATUSES],
            exclude_payment_id,
        )
        return _load_payment(row)

    async def list_by_status(
        self,
        statuses: Iterable[PaymentStatus],
        older_than: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Payment]:
        rows = await self._db.fetch_all(
            """
            SELECT data FROM payments
            WHERE status = ANY($1::text[]) AND is_order_bump = FALSE
              AND ($2::timestamp IS NULL OR updated_at <= $2)
            ORDER BY created_at
            LIMIT $3
            """,
            [PaymentStatus(s).value for s in statuses],
            older_than,
            limit,
        )
        return [_load_payment(r) for r in rows]

    async def count_by_status(self) -> dict[str, int]:
        rows = await self._db.fetch_all("SELECT status, COUNT(*) AS count FROM payments GROUP BY status")
        counts = {s.value: 0 for s in PaymentStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts


class PostgresFailedPaymentRepository(IFailedPaymentRepository):

    def __init__(self, db=Database):
        self._db = db

    async def get(self, id: str) -> Optional[FailedPayment]:
        row = await self._db.fetch_one(
            "SELECT data FROM failed_payments WHERE failed_payment_id = $1", id
        )
        return FailedPayment.model_validate_json(row["data"]) if row else None

    async def save(self, entity: FailedPayment) -> FailedPayment:
        await self._db.execute(
            """
            INSERT INTO failed_payments (failed_payment_id, order_id, resolved, data, created_at)
            VALUES ($1, $2, $3, $4::jsonb, $5)
            ON CONFLICT (failed_payment_id) DO UPDATE SET
                resolved = EXCLUDED.resolved,
                data = EXCLUDED.data
            """,
            entity.failed_payment_id,
            entity.order_id,
            entity.resolved,
            entity.model_dump_json(),
            entity.created_at,
        )
        return entity

    async def list_by_order_id(self, order_id: str, unresolved_only: bool = False) -> list[FailedPayment]:
        rows = await self._db.fetch_all(
            """
            SELECT data FROM failed_payments
            WHERE order_id = $1 AND (NOT $2 OR resolved = FALSE)
            ORDER BY created_at
            """,
            order_id,
            unresolved_only,
        )
        return [FailedPayment.model_validate_json(r["data"]) for r in rows]

    async def list_unresolved(self, offset: int = 0, limit: int = 20) -> list[FailedPayment]:
        rows = await self._db.fetch_all(
            """
            SELECT data FROM failed_payments
            WHERE resolved = FALSE
            ORDER BY created_at DESC
            OFFSET $1 LIMIT $2
            """,
            offset,
            limit,
        )
        return [FailedPayment.model_validate_json(r["data"]) for r in rows]

    async def count_unresolved(self) -> int:
        return await self._db.fetch_value("SELECT COUNT(*) FROM failed_payments WHERE resolved = FALSE")


class PostgresUserRepository(IUserRepository):

    def __init__(self, db=Database):
        self._db = db

    async def get(self, id: str) -> Optional[User]:
        row = await self._db.fetch_one("SELECT data FROM users WHERE user_id = $1", id)
        return User.model_validate_json(row["data"]) if row else None

    async def save(self, entity: User) -> User:
        await self._db.execute(
            """
            INSERT INTO users (user_id, email, data) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (user_id) DO UPDATE SET email = EXCLUDED.email, data = EXCLUDED.data
            """,
            entity.user_id,
            entity.email,
            entity.model_dump_json(),
        )
        return entity

    async def get_by_email(self, email: str) -> Optional[User]:
        row = await self._db.fetch_one(
            "SELECT data FROM users WHERE email = $1", email.strip().lower()
        )
        return User.model_validate_json(row["data"]) if row else None


class PostgresContactRepository(IContactRepository):

    def __init__(self, db=Database):
        self._db = db

    async def get(self, id: str) -> Optional[Contact]:
        row = await self._db.fetch_one("SELECT data FROM contacts WHERE contact_id = $1", id)
        return Contact.model_validate_json(row["data"]) if row else None

    async def save(self, entity: Contact) -> Contact:
        await self._db.execute(
            """
            INSERT INTO contacts (contact_id, email, data) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (contact_id) DO UPDATE SET data = EXCLUDED.data
            """,
            entity.contact_id,
            entity.email,
            entity.model_dump_json(),
        )
        return entity

    async def get_by_email(self, email: str) -> Optional[Contact]:
        row = await self._db.fetch_one(
            "SELECT data FROM contacts WHERE email = $1", email.strip().lower()
        )
        return Contact.model_validate_json(row["data"]) if row else None


class PostgresTagRepository(ITagRepository):

    def __init__(self, db=Database):
        self._db = db

    async def get(self, id: str) -> Optional[Tag]:
        row = await self._db.fetch_one("SELECT data FROM tags WHERE tag_id = $1", id)
        return Tag.model_validate_json(row["data"]) if row else None

    async def save(self, entity: Tag) -> Tag:
        await self._db.execute(
            """
            INSERT INTO tags (tag_id, name, data) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (name) DO NOTHING
            """,
            entity.tag_id,
            entity.name,
            entity.model_dump_json(),
        )
        return await self.get_by_name(entity.name) or entity

    async def get_by_name(self, name: str) -> Optional[Tag]:
        row = await self._db.fetch_one("SELECT data FROM tags WHERE name = $1", name)
        return Tag.model_validate_json(row["data"]) if row else None


class PostgresProductCatalog(IProductCatalog):

    def __init__(self, db=Database):
        self._db = db

    async def get_product(self, product_id: str, product_type: ProductType) -> Optional[Product]:
        row = await self._db.fetch_one(
            "SELECT data FROM products WHERE product_id = $1 AND product_type = $2",
            product_id,
            ProductType(product_type).value,
        )
        return _product_adapter.validate_json(row["data"]) if row else None


class PostgresOrderBumpRepository(IOrderBumpRepository):

    def __init__(self, db=Database):
        self._db = db

    async def get(self, id: str) -> Optional[OrderBump]:
        row = await self._db.fetch_one("SELECT data FROM order_bumps WHERE bump_id = $1", id)
        return OrderBump.model_validate_json(row["data"]) if row else None

    async def save(self, entity: OrderBump) -> OrderBump:
        await self._db.execute(
            """
            INSERT INTO order_bumps (bump_id, target_product, bump_product, data)
            VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (bump_id) DO UPDATE SET data = EXCLUDED.data
            """,
            entity.bump_id,
            entity.target_product,
            entity.bump_product,
            entity.model_dump_json(exclude={"conversion_rate"}),
        )
        return entity

    async def get_by_bump_product(self, product_id: str) -> Optional[OrderBump]:
        row = await self._db.fetch_one(
            "SELECT data FROM order_bumps WHERE bump_product = $1 "
            "ORDER BY (data->>'is_active')::boolean DESC LIMIT 1",
            product_id,
        )
        return OrderBump.model_validate_json(row["data"]) if row else None

    async def list_for_target(self, target_product: str) -> list[OrderBump]:
        rows = await self._db.fetch_all(
            "SELECT data FROM order_bumps WHERE target_product = $1", target_product
        )
        return [OrderBump.model_validate_json(r["data"]) for r in rows]

    async def increment_conversions(self, bump_id: str) -> None:
        await self._db.execute(
            """
            UPDATE order_bumps
            SET data = jsonb_set(data, '{conversions}', to_jsonb((data->>'conversions')::int + 1))
            WHERE bump_id = $1
            """,
            bump_id,
        )
