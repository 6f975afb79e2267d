# api/server.py
# ============================================================================
# COURSE CHECKOUT PAYMENTS — FASTAPI SERVER
# ============================================================================
# Checkout, buyer verification and admin reconciliation endpoints
# ============================================================================

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional, Union

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from config import settings
from errors import (
    AlreadyResolvedError,
    EntitlementError,
    NotFoundError,
    PaymentValidationError,
)
from gateways.base import GatewayRequestError, GatewayUnavailable
from pipeline.checkout import CheckoutSession
from pipeline.container import PaymentServices, build_services
from schemas.payment_models import Customer, Gateway, ProductType
from schemas.results import (
    FailedPaymentPage,
    PaymentDetails,
    PaymentSummary,
    ReconciliationReport,
    RetryResult,
    VerificationResult,
)
from tasks.reconciliation_loop import ReconciliationLoop

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger("Payments.Server")

VERSION = "1.0.0"
START_TIME = datetime.utcnow()


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CreateOrderRequest(BaseModel):
    """Storefront checkout request."""
    gateway: Gateway = Gateway.RAZORPAY
    product_id: str = Field(..., min_length=1)
    product_type: ProductType = ProductType.COURSE
    email: str = Field(..., min_length=3)
    username: str = ""
    phone: str = ""
    order_bumps: list[Union[str, dict[str, Any]]] = Field(default_factory=list)


class VerifyPaymentRequest(BaseModel):
    """Checkout callback forwarded by the storefront."""
    order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    signature: Optional[str] = None
    order_bumps: Optional[list[Union[str, dict[str, Any]]]] = None


class ReconcileRequest(BaseModel):
    order_ids: list[str]


class RetryRequest(BaseModel):
    resolved_by: str = "admin"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    gateways: list[str]
    reconciliation: Optional[dict] = None


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(services: Optional[PaymentServices] = None, run_loop: Optional[bool] = None) -> FastAPI:
    """Build the app; injected services skip the background loop by default."""
    if run_loop is None:
        run_loop = services is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("Starting payments service v%s (%s)", VERSION, settings.ENVIRONMENT)

        app.state.services = services or build_services()
        await app.state.services.startup()

        app.state.loop = None
        loop_task = None
        if run_loop:
            app.state.loop = ReconciliationLoop(app.state.services.payments, app.state.services.sweep)
            loop_task = asyncio.create_task(app.state.loop.run_forever())
            logger.info("Reconciliation loop scheduled")

        yield

        logger.info("Shutting down payments service...")
        if loop_task:
            app.state.loop.stop()
            await loop_task
        await app.state.services.shutdown()

    app = FastAPI(
        title="Course Checkout Payments",
        description="Gateway verification, fulfillment and reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    _register_error_handlers(app)
    _register_routes(app)
    return app


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services


# ============================================================================
# ERROR MAPPING
# ============================================================================

def _error_body(message: str, **extra) -> dict:
    return {"success": False, "message": message, **extra}


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(PaymentValidationError)
    async def validation_error(request: Request, exc: PaymentValidationError):
        return JSONResponse(status_code=400, content=_error_body(exc.message, code=exc.code))

    @app.exception_handler(AlreadyResolvedError)
    async def already_resolved(request: Request, exc: AlreadyResolvedError):
        return JSONResponse(status_code=400, content=_error_body(exc.message, code=exc.code))

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content=_error_body(exc.message, code=exc.code))

    @app.exception_handler(GatewayUnavailable)
    async def gateway_unavailable(request: Request, exc: GatewayUnavailable):
        logger.warning("Gateway unavailable: %s", exc)
        return JSONResponse(
            status_code=503,
            content=_error_body("Payment provider temporarily unavailable, please retry", retryable=True),
        )

    @app.exception_handler(GatewayRequestError)
    async def gateway_rejected(request: Request, exc: GatewayRequestError):
        logger.error("Gateway rejected request: %s", exc)
        return JSONResponse(status_code=502, content=_error_body(str(exc)))

    @app.exception_handler(EntitlementError)
    async def entitlement_failed(request: Request, exc: EntitlementError):
        logger.error("Fulfillment failed for order %s: %s", exc.order_id, exc.message)
        return JSONResponse(
            status_code=500,
            content=_error_body(
                "Payment received but access could not be granted. Please contact support.",
                referenceId=exc.order_id,
            ),
        )


# ============================================================================
# ENDPOINTS
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request, services: PaymentServices = Depends(get_services)):
        """Health check endpoint."""
        loop = getattr(request.app.state, "loop", None)
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(datetime.utcnow() - START_TIME).total_seconds(),
            gateways=[g.value for g in services.gateways.supported],
            reconciliation=loop.get_stats() if loop else None,
        )

    @app.post("/api/payments/create-order", response_model=CheckoutSession)
    async def create_order(body: CreateOrderRequest, services: PaymentServices = Depends(get_services)):
        session = await services.checkout.create_order(
            gateway=body.gateway,
            product_id=body.product_id,
            product_type=body.product_type,
            customer=Customer(email=body.email, username=body.username, phone=body.phone),
            order_bumps=body.order_bumps,
        )
        logger.info("Order created | order=%s | amount=%.2f", session.order_id, session.amount)
        return session

    @app.post("/api/payments/verify", response_model=VerificationResult)
    async def verify_payment(body: VerifyPaymentRequest, services: PaymentServices = Depends(get_services)):
        """
        Buyer callback after checkout.

        Returns 200 for success/already_paid, 400 when the gateway does not
        confirm the capture.
        """
        result = await services.verifier.verify_payment(
            order_id=body.order_id,
            gateway_payment_id=body.gateway_payment_id,
            signature=body.signature,
            order_bumps=body.order_bumps,
        )
        if not result.success:
            return JSONResponse(status_code=400, content=result.model_dump(mode="json"))
        return result

    @app.post("/api/admin/payments/reconcile", response_model=ReconciliationReport)
    async def reconcile_payments(body: ReconcileRequest, services: PaymentServices = Depends(get_services)):
        report = await services.sweep.reconcile(body.order_ids)
        logger.info(
            "Reconciliation | total=%d succeeded=%d failed=%d skipped=%d errors=%d",
            report.summary.total, report.summary.succeeded, report.summary.failed,
            report.summary.skipped, report.summary.errors,
        )
        return report

    @app.post("/api/admin/payments/failed/{failed_payment_id}/retry", response_model=RetryResult)
    async def retry_failed_payment(
        failed_payment_id: str,
        body: Optional[RetryRequest] = None,
        services: PaymentServices = Depends(get_services),
    ):
        resolved_by = body.resolved_by if body else "admin"
        return await services.admin.retry_failed_payment(failed_payment_id, resolved_by)

    @app.get("/api/admin/payments/summary", response_model=PaymentSummary)
    async def payment_summary(services: PaymentServices = Depends(get_services)):
        return await services.admin.get_payment_summary()

    @app.get("/api/admin/payments/failed", response_model=FailedPaymentPage)
    async def list_failed_payments(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        services: PaymentServices = Depends(get_services),
    ):
        return await services.admin.list_failed_payments(page, limit)

    @app.get("/api/admin/payments/{order_id}", response_model=PaymentDetails)
    async def payment_details(order_id: str, services: PaymentServices = Depends(get_services)):
        return await services.admin.get_payment_details(order_id)


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=settings.ENVIRONMENT == "development",
        log_level="info"
    )
