"""Result envelopes returned by the verification, fulfillment and reconciliation paths."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from schemas.payment_models import FailedPayment, GatewayPayment, Payment, User


class FulfillmentStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_PAID = "already_paid"


class StepFailure(BaseModel):
    """A best-effort step that failed without affecting entitlement"""
    step: str
    error: str


class FulfillmentResult(BaseModel):
    success: bool = True
    status: FulfillmentStatus
    message: str
    payment: Payment
    user: Optional[User] = None
    reset_link: Optional[str] = None
    bump_payments: list[Payment] = Field(default_factory=list)
    notify_failures: list[StepFailure] = Field(default_factory=list)


class VerificationResult(BaseModel):
    success: bool
    status: str  # "success" | "already_paid" | "failed"
    message: str = ""
    reason: Optional[str] = None
    payment: Optional[Payment] = None
    reset_link: Optional[str] = None
    gateway_status: Optional[str] = None


class ReconcileStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class ReconcileItemResult(BaseModel):
    order_id: str
    status: ReconcileStatus
    reason: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_status: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class BatchSummary(BaseModel):
    total: int
    succeeded: int
    failed: int
    skipped: int
    errors: int


class ReconciliationDetails(BaseModel):
    succeeded: list[ReconcileItemResult] = Field(default_factory=list)
    failed: list[ReconcileItemResult] = Field(default_factory=list)
    skipped: list[ReconcileItemResult] = Field(default_factory=list)
    errors: list[ReconcileItemResult] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    success: bool = True
    summary: BatchSummary
    details: ReconciliationDetails


class RetryResult(BaseModel):
    success: bool
    status: str  # "resolved" | "retried" | "unresolved"
    message: str
    reconciliation: Optional[ReconcileItemResult] = None


class PaymentSummary(BaseModel):
    total: int
    success: int
    failed: int
    reconciled: int
    pending: int

    @computed_field
    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return round((self.success + self.reconciled) / self.total * 100, 2)


class PaymentDetails(BaseModel):
    payment: Payment
    gateway_payment: Optional[GatewayPayment] = None
    user: Optional[User] = None
    bump_payments: list[Payment] = Field(default_factory=list)


class FailedPaymentPage(BaseModel):
    data: list[FailedPayment] = Field(default_factory=list)
    total: int
    pages: int
    current_page: int
