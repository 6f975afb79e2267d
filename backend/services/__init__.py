# services/__init__.py
# ============================================================================
# PAYMENTS — SUPPORTING SERVICES
# ============================================================================
# Password-set tokens, CRM tagging, invoices, email, conversion pixel
# ============================================================================

from services.reset_tokens import ResetTokenService

from services.contact_sync import ContactTagSync

from services.invoice import InvoiceRenderer

from services.mailer import (
    PurchaseMailer,
    EmailDeliveryError,
    EmailReceipt,
)

from services.pixel_tracker import ConversionTracker, hash_sha256

from services.temp_user_cache import ExpiringStore

__all__ = [
    # Tokens
    "ResetTokenService",
    # CRM
    "ContactTagSync",
    # Emitters
    "InvoiceRenderer",
    "PurchaseMailer",
    "EmailDeliveryError",
    "EmailReceipt",
    "ConversionTracker",
    "hash_sha256",
    # Signup cache
    "ExpiringStore",
]
