"""
Verification Path
=================
Buyer-facing confirmation of a checkout. The gateway is asked directly;
a capture matching the ledger row (order id + amount) is handed to the
fulfillment orchestrator, anything else leaves the buyer unentitled.
"""

import uuid
from typing import Optional

import structlog

from errors import (
    AmountMismatchError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from gateways.base import GatewayRegistry, PaymentGatewayClient
from pipeline.failed_payment_log import FailedPaymentLog
from pipeline.fulfillment import BumpRef, FulfillmentOrchestrator, FulfillmentRequest
from repositories.interfaces import IPaymentRepository
from schemas.payment_models import (
    SUCCESS_STATUSES,
    FailureContext,
    GatewayPayment,
    Payment,
    PaymentStatus,
)
from schemas.results import FulfillmentStatus, VerificationResult


class PaymentVerifier:

    def __init__(
        self,
        payments: IPaymentRepository,
        gateways: GatewayRegistry,
        orchestrator: FulfillmentOrchestrator,
        failed_log: FailedPaymentLog,
    ):
        self.payments = payments
        self.gateways = gateways
        self.orchestrator = orchestrator
        self.failed_log = failed_log
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="payment_verifier",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    def _client_for(self, payment: Payment) -> PaymentGatewayClient:
        try:
            return self.gateways.get(payment.gateway)
        except KeyError as e:
            raise PaymentValidationError(f"Unsupported gateway: {payment.gateway.value}") from e

    async def verify_payment(
        self,
        order_id: str,
        gateway_payment_id: str,
        signature: Optional[str] = None,
        order_bumps: Optional[list[BumpRef]] = None,
        correlation_id: str = None,
    ) -> VerificationResult:
        log = self._get_logger(correlation_id)

        if not order_id or not gateway_payment_id:
            raise PaymentValidationError("Missing required payment parameters")

        payment = await self.payments.get_by_order_id(order_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment not found for order {order_id}")

        if payment.status in SUCCESS_STATUSES:
            log.info("verify_already_paid", order_id=order_id)
            return VerificationResult(
                success=True,
                status=FulfillmentStatus.ALREADY_PAID.value,
                message="Payment already processed",
                payment=payment,
            )

        client = self._client_for(payment)
        await self._check_bumps(payment, order_bumps or [], log)

        verify_signature = getattr(client, "verify_signature", None)
        if signature and verify_signature and not verify_signature(order_id, gateway_payment_id, signature):
            log.warning("verify_bad_signature", order_id=order_id, gateway_payment_id=gateway_payment_id)
            await self.failed_log.record(
                "Invalid payment signature",
                FailureContext.ORDER_VERIFICATION,
                payment=payment,
                gateway_payment_id=gateway_payment_id,
                error_code="INVALID_SIGNATURE",
            )
            return VerificationResult(
                success=False,
                status="failed",
                message="Payment verification failed",
                reason="Invalid payment signature",
                payment=payment,
            )

        # GatewayUnavailable propagates; the row stays as it is
        gateway_payment = await client.fetch_payment(gateway_payment_id, order_id=order_id)
        if gateway_payment is None:
            log.warning("verify_gateway_payment_missing", order_id=order_id, gateway_payment_id=gateway_payment_id)
            return VerificationResult(
                success=False,
                status="failed",
                message="Payment verification failed",
                reason=f"Payment not found in {client.display_name}",
                payment=payment,
            )

        mismatch = self._mismatch_reason(client, payment, gateway_payment)
        if mismatch:
            failed = await self._mark_failed(payment, mismatch, gateway_payment, log)
            return VerificationResult(
                success=False,
                status="failed",
                message="Payment verification failed",
                reason=mismatch,
                payment=failed,
                gateway_status=gateway_payment.status,
            )

        if not gateway_payment.is_captured:
            reason = f"{client.display_name} status: {gateway_payment.status}"
            log.info("verify_not_captured", order_id=order_id, gateway_status=gateway_payment.status)
            if gateway_payment.status == "failed":
                payment = await self.payments.save(payment.transition_to(
                    PaymentStatus.FAILED,
                    gateway_payment_id=gateway_payment.payment_id,
                    failure_reason=reason,
                ))
            return VerificationResult(
                success=False,
                status="failed",
                message="Payment not completed",
                reason=reason,
                payment=payment,
                gateway_status=gateway_payment.status,
            )

        result = await self.orchestrator.fulfill(
            FulfillmentRequest(
                payment=payment,
                gateway_payment_id=gateway_payment.payment_id,
                amount=gateway_payment.amount / 100,
            ),
            terminal_status=PaymentStatus.SUCCESS,
            correlation_id=correlation_id,
        )

        log.info("verify_complete", order_id=order_id, status=result.status.value)
        return VerificationResult(
            success=True,
            status=result.status.value,
            message=result.message,
            payment=result.payment,
            reset_link=result.reset_link,
            gateway_status=gateway_payment.status,
        )

    async def _check_bumps(self, payment: Payment, refs: list[BumpRef], log) -> None:
        """Bumps are granted from the checkout row; the callback may only echo them."""
        paid = set(payment.requested_bumps)
        unpaid = []
        for ref in refs:
            bump = await self.orchestrator.resolve_bump(ref)
            if bump is None or bump.bump_id not in paid:
                unpaid.append(str(ref))
        if unpaid:
            log.warning("verify_unpaid_bumps", order_id=payment.order_id, bumps=unpaid)
            raise PaymentValidationError(
                f"Order bumps not part of order {payment.order_id}: {', '.join(unpaid)}"
            )

    @staticmethod
    def _mismatch_reason(
        client: PaymentGatewayClient,
        payment: Payment,
        gateway_payment: GatewayPayment,
    ) -> Optional[str]:
        if gateway_payment.order_id and gateway_payment.order_id != payment.order_id:
            return f"Order mismatch ({client.display_name}: {gateway_payment.order_id}, DB: {payment.order_id})"
        if gateway_payment.amount != payment.amount_minor:
            return AmountMismatchError(client.display_name, gateway_payment.amount, payment.amount).message
        return None

    async def _mark_failed(
        self,
        payment: Payment,
        reason: str,
        gateway_payment: GatewayPayment,
        log,
    ) -> Payment:
        log.error("verify_mismatch", order_id=payment.order_id, reason=reason)
        failed = await self.payments.save(payment.transition_to(
            PaymentStatus.FAILED,
            gateway_payment_id=gateway_payment.payment_id,
            failure_reason=reason,
        ))
        await self.failed_log.record(
            reason,
            FailureContext.ORDER_VERIFICATION,
            payment=payment,
            gateway_payment_id=gateway_payment.payment_id,
            gateway_amount=gateway_payment.amount / 100,
            gateway_status=gateway_payment.status,
            error_code=AmountMismatchError.code if reason.startswith("Amount") else "ORDER_MISMATCH",
        )
        return failed
