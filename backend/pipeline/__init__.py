# pipeline/__init__.py
from pipeline.failed_payment_log import FailedPaymentLog
from pipeline.fulfillment import FulfillmentOrchestrator, FulfillmentRequest
from pipeline.verification import PaymentVerifier
from pipeline.reconciliation import ReconciliationSweep
from pipeline.admin import PaymentAdmin
from pipeline.checkout import CheckoutService, CheckoutSession
from pipeline.container import PaymentServices, build_services, default_gateways

__all__ = [
    "FailedPaymentLog",
    "FulfillmentOrchestrator",
    "FulfillmentRequest",
    "PaymentVerifier",
    "ReconciliationSweep",
    "PaymentAdmin",
    "CheckoutService",
    "CheckoutSession",
    "PaymentServices",
    "build_services",
    "default_gateways",
]
