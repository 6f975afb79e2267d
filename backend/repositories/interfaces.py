"""
Persistence Interfaces
======================
Abstract repositories for the ledger, the failed-payment log, buyers, the
CRM mirror and the read-only catalog. In-memory and Postgres implementations
are interchangeable behind these.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Generic, Iterable, Optional, TypeVar

from pydantic import BaseModel

from schemas.payment_models import (
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

T = TypeVar("T", bound=BaseModel)


class IRepository(ABC, Generic[T]):
    """Abstract repository interface"""

    @abstractmethod
    async def get(self, id: str) -> Optional[T]:
        pass

    @abstractmethod
    async def save(self, entity: T) -> T:
        pass


class IPaymentRepository(IRepository[Payment]):
    """Payment ledger"""

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        """Primary (non-bump) row for a gateway order."""
        pass

    @abstractmethod
    async def list_by_order_id(self, order_id: str, include_bumps: bool = True) -> list[Payment]:
        pass

    @abstractmethod
    async def find_entitlement(
        self,
        email: str,
        product_id: str,
        product_type: ProductType,
        exclude_payment_id: Optional[str] = None,
    ) -> Optional[Payment]:
        """Success/Reconciled row for (email, product), excluding one row."""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        statuses: Iterable[PaymentStatus],
        older_than: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Payment]:
        pass

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        pass


class IFailedPaymentRepository(IRepository[FailedPayment]):
    """Append-only failure log"""

    @abstractmethod
    async def list_by_order_id(self, order_id: str, unresolved_only: bool = False) -> list[FailedPayment]:
        pass

    @abstractmethod
    async def list_unresolved(self, offset: int = 0, limit: int = 20) -> list[FailedPayment]:
        """Newest first."""
        pass

    @abstractmethod
    async def count_unresolved(self) -> int:
        pass


class IUserRepository(IRepository[User]):

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[User]:
        pass


class IContactRepository(IRepository[Contact]):

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[Contact]:
        pass


class ITagRepository(IRepository[Tag]):

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[Tag]:
        pass


class IProductCatalog(ABC):
    """Read-only product lookups"""

    @abstractmethod
    async def get_product(self, product_id: str, product_type: ProductType) -> Optional[Product]:
        pass


class IOrderBumpRepository(IRepository[OrderBump]):

    @abstractmethod
    async def get_by_bump_product(self, product_id: str) -> Optional[OrderBump]:
        pass

    @abstractmethod
    async def list_for_target(self, target_product: str) -> list[OrderBump]:
        pass

    @abstractmethod
    async def increment_conversions(self, bump_id: str) -> None:
        pass
