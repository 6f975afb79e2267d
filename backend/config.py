"""
Configuration & Logging
=======================
Environment-driven settings shared by every payments component, plus the
structlog pipeline (JSON lines, ISO timestamps, correlation context).

pip install structlog
"""

import logging
import os

import structlog


# =============================================================================
# CONFIGURATION
# =============================================================================

class Settings:
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    CORS_ORIGINS: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")

    # Razorpay
    RAZORPAY_KEY_ID: str = os.getenv("RAZORPAY_KEY_ID", "rzp_test_YOUR_KEY")
    RAZORPAY_KEY_SECRET: str = os.getenv("RAZORPAY_SECRET_ID", "YOUR_SECRET")
    RAZORPAY_BASE_URL: str = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")

    # Cashfree
    CASHFREE_CLIENT_ID: str = os.getenv("CASHFREE_CLIENT_ID", "cf_test_YOUR_ID")
    CASHFREE_CLIENT_SECRET: str = os.getenv("CASHFREE_CLIENT_SECRET", "YOUR_SECRET")
    CASHFREE_BASE_URL: str = os.getenv("CASHFREE_BASE_URL", "https://sandbox.cashfree.com/pg")
    CASHFREE_API_VERSION: str = os.getenv("CASHFREE_API_VERSION", "2023-08-01")

    # Gateway resilience
    GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
    CB_FAILURE_THRESHOLD: int = int(os.getenv("GATEWAY_CB_FAILURE_THRESHOLD", "5"))
    CB_RESET_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_CB_RESET_SECONDS", "30"))

    # Email (SendGrid)
    SENDGRID_API_KEY: str = os.getenv("SENDGRID_API_KEY", "SG.YOUR_KEY")
    SENDGRID_FROM_EMAIL: str = os.getenv("MAIL", "no-reply@example.com")
    BRAND_NAME: str = os.getenv("BRAND_NAME", "SkillXera")

    # Invoices
    INVOICE_DIR: str = os.getenv("INVOICE_DIR", "invoices")

    # Conversion pixel
    FB_PIXEL_ID: str = os.getenv("FB_PIXEL_ID", "")
    FB_PIXEL_ACCESS_TOKEN: str = os.getenv("FB_PIXEL_ACCESS_TOKEN", "")
    FB_GRAPH_URL: str = os.getenv("FB_GRAPH_URL", "https://graph.facebook.com/v18.0")
    PIXEL_TIMEOUT_SECONDS: float = float(os.getenv("PIXEL_TIMEOUT_SECONDS", "5"))

    # Password-set tokens
    RESET_TOKEN_SECRET: str = os.getenv("RESET_TOKEN_SECRET", "change-me-reset-token-secret")
    RESET_TOKEN_TTL_MINUTES: int = int(os.getenv("RESET_TOKEN_TTL_MINUTES", "15"))

    # Pending signup cache (OTP flow)
    SIGNUP_CACHE_TTL_SECONDS: int = int(os.getenv("SIGNUP_CACHE_TTL_SECONDS", "600"))

    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "INR")

    # Empty means in-memory repositories
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")


settings = Settings()


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(level: str = None) -> None:
    """Configure structlog for JSON output at the given level."""
    level_name = (level or settings.LOG_LEVEL).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
