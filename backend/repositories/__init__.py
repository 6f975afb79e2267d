# repositories/__init__.py
from repositories.interfaces import (
    IRepository,
    IPaymentRepository,
    IFailedPaymentRepository,
    IUserRepository,
    IContactRepository,
    ITagRepository,
    IProductCatalog,
    IOrderBumpRepository,
)

from repositories.memory import (
    InMemoryPaymentRepository,
    InMemoryFailedPaymentRepository,
    InMemoryUserRepository,
    InMemoryContactRepository,
    InMemoryTagRepository,
    InMemoryProductCatalog,
    InMemoryOrderBumpRepository,
)

from repositories.postgres import (
    PostgresPaymentRepository,
    PostgresFailedPaymentRepository,
    PostgresUserRepository,
    PostgresContactRepository,
    PostgresTagRepository,
    PostgresProductCatalog,
    PostgresOrderBumpRepository,
)

__all__ = [
    # Interfaces
    "IRepository",
    "IPaymentRepository",
    "IFailedPaymentRepository",
    "IUserRepository",
    "IContactRepository",
    "ITagRepository",
    "IProductCatalog",
    "IOrderBumpRepository",
    # In-memory
    "InMemoryPaymentRepository",
    "InMemoryFailedPaymentRepository",
    "InMemoryUserRepository",
    "InMemoryContactRepository",
    "InMemoryTagRepository",
    "InMemoryProductCatalog",
    "InMemoryOrderBumpRepository",
    # Postgres
    "PostgresPaymentRepository",
    "PostgresFailedPaymentRepository",
    "PostgresUserRepository",
    "PostgresContactRepository",
    "PostgresTagRepository",
    "PostgresProductCatalog",
    "PostgresOrderBumpRepository",
]
