# schemas/__init__.py
from schemas.payment_models import (
    PaymentStatus,
    ProductType,
    Gateway,
    FailureContext,
    ContactStatus,
    SUCCESS_STATUSES,
    RECONCILABLE_STATUSES,
    STATUS_TAG_FAMILY,
    Course,
    CourseModule,
    Lecture,
    DigitalProduct,
    Bundle,
    GenericProduct,
    Product,
    ProductSnapshot,
    build_snapshot,
    Customer,
    ProcessedBump,
    Payment,
    FailedPayment,
    User,
    Tag,
    Contact,
    OrderBump,
    GatewayPayment,
    GatewayOrder,
)

from schemas.results import (
    FulfillmentStatus,
    FulfillmentResult,
    StepFailure,
    VerificationResult,
    ReconcileStatus,
    ReconcileItemResult,
    BatchSummary,
    ReconciliationReport,
    RetryResult,
    PaymentSummary,
    PaymentDetails,
    FailedPaymentPage,
)

__all__ = [
    # Enums
    "PaymentStatus",
    "ProductType",
    "Gateway",
    "FailureContext",
    "ContactStatus",
    "SUCCESS_STATUSES",
    "RECONCILABLE_STATUSES",
    "STATUS_TAG_FAMILY",
    # Catalog
    "Course",
    "CourseModule",
    "Lecture",
    "DigitalProduct",
    "Bundle",
    "GenericProduct",
    "Product",
    "ProductSnapshot",
    "build_snapshot",
    # Ledger
    "Customer",
    "ProcessedBump",
    "Payment",
    "FailedPayment",
    "User",
    "Tag",
    "Contact",
    "OrderBump",
    "GatewayPayment",
    "GatewayOrder",
    # Results
    "FulfillmentStatus",
    "FulfillmentResult",
    "StepFailure",
    "VerificationResult",
    "ReconcileStatus",
    "ReconcileItemResult",
    "BatchSummary",
    "ReconciliationReport",
    "RetryResult",
    "PaymentSummary",
    "PaymentDetails",
    "FailedPaymentPage",
]
