"""
Payment Domain Models
=====================
Ledger rows, failure records, buyers, CRM mirror, catalog products and the
normalized gateway view shared by every payments component.

Products and their purchase-time snapshots are tagged unions discriminated
on ``product_type`` / ``kind``.

pip install pydantic
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator


# =============================================================================
# ENUMS
# =============================================================================

class PaymentStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    RECONCILED = "Reconciled"


SUCCESS_STATUSES = (PaymentStatus.SUCCESS, PaymentStatus.RECONCILED)
RECONCILABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


class ProductType(str, Enum):
    COURSE = "Course"
    DIGITAL_PRODUCT = "DigitalProduct"
    BUNDLE = "Bundle"
    OTHER = "Other"


class Gateway(str, Enum):
    RAZORPAY = "razorpay"
    CASHFREE = "cashfree"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return {"razorpay": "Razorpay", "cashfree": "Cashfree"}.get(self.value, "Gateway")


class FailureContext(str, Enum):
    PAYMENT_PROCESSING = "payment_processing"
    ORDER_VERIFICATION = "order_verification"
    REFUND_PROCESSING = "refund_processing"
    USER_CREATION = "user_creation"
    EMAIL_SENDING = "email_sending"
    ORDER_BUMP = "order_bump"
    DATABASE_ERROR = "database_error"
    OTHER = "other"


class ContactStatus(str, Enum):
    """Funnel-stage tags; a contact carries at most one of these."""
    SUCCESS = "Success"
    FAILED = "Failed"
    RECONCILED = "Reconciled"
    DROP_OFF = "drop-off"


STATUS_TAG_FAMILY = frozenset(s.value for s in ContactStatus)


# =============================================================================
# CATALOG PRODUCTS (read-only lookups)
# =============================================================================

class Lecture(BaseModel):
    lecture_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str
    description: str = ""
    embed_code: str = ""
    content_type: str = "video"
    resources: list[str] = Field(default_factory=list)
    duration: Optional[str] = None


class CourseModule(BaseModel):
    module_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str
    lectures: list[Lecture] = Field(default_factory=list)


class Course(BaseModel):
    product_type: Literal[ProductType.COURSE] = ProductType.COURSE
    id: str
    title: str
    description: str = ""
    images: list[str] = Field(default_factory=list)
    route: str = ""
    buy_course: str = ""
    regular_price: float = 0
    sales_price: float = 0
    modules: list[CourseModule] = Field(default_factory=list)

    @property
    def price(self) -> float:
        return self.sales_price or self.regular_price


class DigitalProduct(BaseModel):
    product_type: Literal[ProductType.DIGITAL_PRODUCT] = ProductType.DIGITAL_PRODUCT
    id: str
    title: str
    description: str = ""
    images: list[str] = Field(default_factory=list)
    regular_price: float = 0
    sales_price: float = 0
    file_url: Optional[str] = None
    external_url: Optional[str] = None

    @property
    def price(self) -> float:
        return self.sales_price or self.regular_price


class Bundle(BaseModel):
    product_type: Literal[ProductType.BUNDLE] = ProductType.BUNDLE
    id: str
    title: str
    description: str = ""
    images: list[str] = Field(default_factory=list)
    price: float = 0
    item_ids: list[str] = Field(default_factory=list)


class GenericProduct(BaseModel):
    product_type: Literal[ProductType.OTHER] = ProductType.OTHER
    id: str
    title: str
    description: str = ""
    price: float = 0


Product = Annotated[
    Union[Course, DigitalProduct, Bundle, GenericProduct],
    Field(discriminator="product_type"),
]


# =============================================================================
# PRODUCT SNAPSHOTS (frozen at purchase time)
# =============================================================================

class CourseSnapshot(BaseModel):
    kind: Literal["course"] = "course"
    title: str
    description: str = ""
    images: list[str] = Field(default_factory=list)
    route: str = ""
    buy_course: str = ""
    regular_price: float = 0
    sales_price: float = 0
    modules: list[CourseModule] = Field(default_factory=list)

    model_config = {"frozen": True}


class DigitalProductSnapshot(BaseModel):
    kind: Literal["digital_product"] = "digital_product"
    title: str
    description: str = ""
    images: list[str] = Field(default_factory=list)
    regular_price: float = 0
    sales_price: float = 0
    file_url: Optional[str] = None
    external_url: Optional[str] = None

    model_config = {"frozen": True}


class BundleSnapshot(BaseModel):
    kind: Literal["bundle"] = "bundle"
    title: str
    description: str = ""
    images: list[str] = Field(default_factory=list)
    price: float = 0
    item_ids: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class GenericSnapshot(BaseModel):
    kind: Literal["other"] = "other"
    title: str
    description: str = ""
    price: float = 0

    model_config = {"frozen": True}


ProductSnapshot = Annotated[
    Union[CourseSnapshot, DigitalProductSnapshot, BundleSnapshot, GenericSnapshot],
    Field(discriminator="kind"),
]


def build_snapshot(product: BaseModel) -> BaseModel:
    """Freeze the fields of a live catalog product into its snapshot variant."""
    if isinstance(product, Course):
        return CourseSnapshot(
            title=product.title,
            description=product.description,
            images=list(product.images),
            route=product.route,
            buy_course=product.buy_course,
            regular_price=product.regular_price,
            sales_price=product.sales_price,
            modules=[m.model_copy(deep=True) for m in product.modules],
        )
    if isinstance(product, DigitalProduct):
        return DigitalProductSnapshot(
            title=product.title,
            description=product.description,
            images=list(product.images),
            regular_price=product.regular_price,
            sales_price=product.sales_price,
            file_url=product.file_url,
            external_url=product.external_url,
        )
    if isinstance(product, Bundle):
        return BundleSnapshot(
            title=product.title,
            description=product.description,
            images=list(product.images),
            price=product.price,
            item_ids=list(product.item_ids),
        )
    if isinstance(product, GenericProduct):
        return GenericSnapshot(
            title=product.title,
            description=product.description,
            price=product.price,
        )
    raise TypeError(f"Unsupported product variant: {type(product).__name__}")


# =============================================================================
# LEDGER
# =============================================================================

class Customer(BaseModel):
    email: str = ""
    phone: str = ""
    username: str = ""
    user_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return (v or "").strip().lower()


class ProcessedBump(BaseModel):
    """Bump summary stored on the parent ledger row"""
    bump_id: str
    product_id: str
    title: str
    amount: float
    file_url: Optional[str] = None
    external_url: Optional[str] = None

    @computed_field
    @property
    def content_type(self) -> str:
        return "file" if self.file_url else "link"


class Payment(BaseModel):
    """One purchase attempt (ledger row)"""
    payment_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_id: str
    gateway: Gateway = Gateway.RAZORPAY
    gateway_payment_id: Optional[str] = None

    username: str = ""
    email: str
    phone: str = ""

    product_id: str
    product_type: ProductType = ProductType.COURSE
    product_snapshot: Optional[ProductSnapshot] = None

    amount: float  # gateway charge, bumps included on the parent row
    currency: str = "INR"

    status: PaymentStatus = PaymentStatus.PENDING
    previous_status: Optional[PaymentStatus] = None
    failure_reason: Optional[str] = None

    requested_bumps: list[str] = Field(default_factory=list)
    order_bumps: list[ProcessedBump] = Field(default_factory=list)
    is_order_bump: bool = False
    parent_order: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    paid_at: Optional[datetime] = None
    reconciled_at: Optional[datetime] = None

    version: int = 1

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    @computed_field
    @property
    def amount_minor(self) -> int:
        return int(round(self.amount * 100))

    @computed_field
    @property
    def is_entitled(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def customer(self) -> Customer:
        return Customer(email=self.email, phone=self.phone, username=self.username)

    def transition_to(self, new_status: PaymentStatus, **changes: Any) -> "Payment":
        """Return an updated copy carrying the new status"""
        return self.model_copy(update={
            **changes,
            "previous_status": self.status,
            "status": new_status,
            "updated_at": datetime.utcnow(),
            "version": self.version + 1,
        })

    def with_changes(self, **changes: Any) -> "Payment":
        return self.model_copy(update={
            **changes,
            "updated_at": datetime.utcnow(),
            "version": self.version + 1,
        })


class FailedPayment(BaseModel):
    """Append-only diagnostic record of a workflow failure"""
    failed_payment_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_id: str = "unknown"
    gateway: Gateway = Gateway.OTHER
    gateway_payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None

    product_id: Optional[str] = None
    product_type: Optional[ProductType] = None
    amount: float = 0
    currency: str = "INR"
    gateway_amount: Optional[float] = None
    gateway_status: Optional[str] = None

    error: str
    error_code: Optional[str] = None
    stack_trace: Optional[str] = None
    context: FailureContext = FailureContext.OTHER

    customer: Customer = Field(default_factory=Customer)

    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    resolution_action: Optional[str] = None

    payment_data: dict = Field(default_factory=dict)
    metadata: dict = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=datetime.utcnow)

    @computed_field
    @property
    def gateway_url(self) -> Optional[str]:
        if self.gateway == Gateway.RAZORPAY and self.gateway_payment_id:
            return f"https://dashboard.razorpay.com/app/payments/{self.gateway_payment_id}"
        if self.gateway == Gateway.CASHFREE and self.gateway_order_id:
            return f"https://merchant.cashfree.com/merchant/payments/{self.gateway_order_id}"
        return None

    def resolve(self, notes: str, resolved_by: str = "system", action: str = None) -> "FailedPayment":
        return self.model_copy(update={
            "resolved": True,
            "resolved_at": datetime.utcnow(),
            "resolved_by": resolved_by,
            "resolution_notes": notes,
            "resolution_action": action,
        })


# =============================================================================
# BUYERS & CRM
# =============================================================================

class User(BaseModel):
    user_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    username: str = ""
    email: str
    phone: str = ""
    orders: list[str] = Field(default_factory=list)
    reconciled_payments: int = 0
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class Tag(BaseModel):
    tag_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Contact(BaseModel):
    contact_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    email: str
    username: str = ""
    phone: str = ""
    tags: list[str] = Field(default_factory=list)  # tag ids
    status_tag: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class OrderBump(BaseModel):
    """Configured upsell offered alongside a target product"""
    bump_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    target_product: str
    target_product_type: ProductType = ProductType.COURSE
    bump_product: str  # DigitalProduct id
    display_name: str
    description: str = ""
    bump_price: float
    is_active: bool = True
    min_cart_value: float = 0
    displays: int = 0
    conversions: int = 0

    @computed_field
    @property
    def conversion_rate(self) -> float:
        if not self.displays:
            return 0.0
        return round(self.conversions / self.displays * 100, 2)


# =============================================================================
# GATEWAY VIEW
# =============================================================================

class GatewayPayment(BaseModel):
    """Gateway-side payment, amounts in minor units"""
    gateway: Gateway
    payment_id: str
    order_id: Optional[str] = None
    status: str
    amount: int
    currency: str = "INR"
    method: Optional[str] = None
    captured_at: Optional[datetime] = None
    raw: dict = Field(default_factory=dict, exclude=True)

    @computed_field
    @property
    def is_captured(self) -> bool:
        return self.status == "captured"


class GatewayOrder(BaseModel):
    gateway: Gateway
    order_id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    session_ref: str  # checkout handle passed to the client SDK
    raw: dict = Field(default_factory=dict, exclude=True)
