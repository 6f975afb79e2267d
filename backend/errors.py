"""
Payment Error Taxonomy
======================
Validation        -> rejected before any side effect
NotFound          -> aborts, entities that were not found are never mutated
AmountMismatch    -> forces Failed, never auto-corrected
Entitlement       -> commit phase failed; ledger flipped to Failed
DuplicateEntitlement -> store refused a second success-like row

Gateway failures live in gateways.base (GatewayUnavailable is retryable).
"""

from typing import Optional

from schemas.payment_models import FailureContext


class PaymentError(Exception):
    """Base class for payment workflow errors"""

    code: str = "PAYMENT_ERROR"
    context: FailureContext = FailureContext.PAYMENT_PROCESSING

    def __init__(self, message: str, *, context: Optional[FailureContext] = None):
        super().__init__(message)
        self.message = message
        if context is not None:
            self.context = context


class PaymentValidationError(PaymentError):
    code = "VALIDATION_ERROR"


class NotFoundError(PaymentError):
    code = "NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    code = "PAYMENT_NOT_FOUND"
    context = FailureContext.ORDER_VERIFICATION


class ProductNotFoundError(NotFoundError):
    code = "PRODUCT_NOT_FOUND"


class FailedPaymentNotFoundError(NotFoundError):
    code = "FAILED_PAYMENT_NOT_FOUND"


class AmountMismatchError(PaymentError):
    code = "AMOUNT_MISMATCH"
    context = FailureContext.ORDER_VERIFICATION

    def __init__(self, gateway_name: str, gateway_amount_minor: int, ledger_amount: float):
        self.gateway_amount = gateway_amount_minor / 100
        self.ledger_amount = ledger_amount
        super().__init__(
            f"Amount mismatch ({gateway_name}: {_fmt_amount(self.gateway_amount)}, "
            f"DB: {_fmt_amount(ledger_amount)})"
        )


class DuplicateEntitlementError(PaymentError):
    code = "DUPLICATE_ENTITLEMENT"

    def __init__(self, email: str, product_id: str, existing_order_id: Optional[str] = None):
        self.email = email
        self.product_id = product_id
        self.existing_order_id = existing_order_id
        super().__init__(f"{email} already owns product {product_id}")


class EntitlementError(PaymentError):
    """Commit-phase failure; carries the order id as the buyer-facing reference"""

    code = "ENTITLEMENT_FAILED"

    def __init__(self, order_id: str, cause: Exception, context: Optional[FailureContext] = None):
        self.order_id = order_id
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__, context=context)


class AlreadyResolvedError(PaymentError):
    code = "ALREADY_RESOLVED"


def _fmt_amount(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"
