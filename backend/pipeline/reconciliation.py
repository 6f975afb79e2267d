"""
Reconciliation Sweep
====================
Admin-triggered batch over order ids. Each Pending/Failed row is
re-checked against its gateway; confirmed captures are fulfilled with the
Reconciled terminal status. Items run concurrently and are isolated:
one item's exception becomes an ``error`` entry in the report.
"""

import asyncio
import uuid
from typing import Iterable, Optional

import structlog

from errors import AmountMismatchError, PaymentValidationError
from gateways.base import GatewayRegistry, GatewayUnavailable, PaymentGatewayClient
from pipeline.failed_payment_log import FailedPaymentLog
from pipeline.fulfillment import FulfillmentOrchestrator, FulfillmentRequest
from repositories.interfaces import IPaymentRepository
from schemas.payment_models import (
    RECONCILABLE_STATUSES,
    GatewayPayment,
    Payment,
    PaymentStatus,
)
from schemas.results import (
    BatchSummary,
    FulfillmentStatus,
    ReconcileItemResult,
    ReconcileStatus,
    ReconciliationDetails,
    ReconciliationReport,
)

ALREADY_FULFILLED = "Already fulfilled"


class ReconciliationSweep:

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
            component="reconciliation",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def reconcile(self, order_ids: Iterable[str], correlation_id: str = None) -> ReconciliationReport:
        if isinstance(order_ids, str) or order_ids is None:
            raise PaymentValidationError("Please provide an array of order IDs")
        order_ids = list(order_ids)
        if not order_ids or not all(isinstance(o, str) and o for o in order_ids):
            raise PaymentValidationError("Please provide an array of order IDs")

        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        log.info("reconciliation_started", count=len(order_ids))

        outcomes = await asyncio.gather(
            *(self.reconcile_order(order_id, correlation_id) for order_id in order_ids),
            return_exceptions=True,
        )

        details = ReconciliationDetails()
        buckets = {
            ReconcileStatus.SUCCESS: details.succeeded,
            ReconcileStatus.FAILED: details.failed,
            ReconcileStatus.SKIPPED: details.skipped,
            ReconcileStatus.ERROR: details.errors,
        }
        for order_id, outcome in zip(order_ids, outcomes):
            if isinstance(outcome, Exception):
                log.error("reconcile_item_error",
                          order_id=order_id,
                          error=str(outcome),
                          error_type=type(outcome).__name__)
                outcome = ReconcileItemResult(
                    order_id=order_id,
                    status=ReconcileStatus.ERROR,
                    error=str(outcome) or type(outcome).__name__,
                )
            buckets[outcome.status].append(outcome)

        summary = BatchSummary(
            total=len(order_ids),
            succeeded=len(details.succeeded),
            failed=len(details.failed),
            skipped=len(details.skipped),
            errors=len(details.errors),
        )
        log.info("reconciliation_complete", **summary.model_dump())
        return ReconciliationReport(summary=summary, details=details)

    async def reconcile_order(self, order_id: str, correlation_id: str = None) -> ReconcileItemResult:
        log = self._get_logger(correlation_id)

        payment = await self.payments.get_by_order_id(order_id)
        if payment is None:
            return ReconcileItemResult(order_id=order_id, status=ReconcileStatus.SKIPPED, reason="Not found")

        if payment.status not in RECONCILABLE_STATUSES:
            return ReconcileItemResult(
                order_id=order_id,
                status=ReconcileStatus.SKIPPED,
                reason=f"Status is {payment.status.value}",
            )

        try:
            client = self.gateways.get(payment.gateway)
        except KeyError:
            return ReconcileItemResult(
                order_id=order_id,
                status=ReconcileStatus.ERROR,
                error=f"Unsupported gateway: {payment.gateway.value}",
            )

        try:
            payment, gateway_payment = await self._resolve_gateway_payment(client, payment)
        except GatewayUnavailable as e:
            log.warning("reconcile_gateway_unavailable", order_id=order_id, error=str(e))
            return ReconcileItemResult(
                order_id=order_id,
                status=ReconcileStatus.ERROR,
                error=str(e),
                retryable=True,
            )

        if gateway_payment is None:
            return ReconcileItemResult(
                order_id=order_id,
                status=ReconcileStatus.ERROR,
                error=f"No payment found in {client.display_name}",
            )

        if gateway_payment.amount != payment.amount_minor:
            mismatch = AmountMismatchError(client.display_name, gateway_payment.amount, payment.amount)
            log.warning("reconcile_amount_mismatch", order_id=order_id, reason=mismatch.message)
            return ReconcileItemResult(
                order_id=order_id,
                status=ReconcileStatus.FAILED,
                reason=mismatch.message,
                amount=payment.amount,
                currency=payment.currency,
                gateway_payment_id=gateway_payment.payment_id,
                gateway_status=gateway_payment.status,
            )

        if not gateway_payment.is_captured:
            return ReconcileItemResult(
                order_id=order_id,
                status=ReconcileStatus.FAILED,
                reason=f"Payment status is {gateway_payment.status}",
                gateway_payment_id=gateway_payment.payment_id,
                gateway_status=gateway_payment.status,
            )

        result = await self.orchestrator.fulfill(
            FulfillmentRequest(
                payment=payment,
                gateway_payment_id=gateway_payment.payment_id,
                amount=gateway_payment.amount / 100,
            ),
            terminal_status=PaymentStatus.RECONCILED,
            correlation_id=correlation_id,
        )

        if result.status == FulfillmentStatus.ALREADY_PAID:
            return ReconcileItemResult(
                order_id=order_id,
                status=ReconcileStatus.SKIPPED,
                reason=ALREADY_FULFILLED,
                gateway_payment_id=gateway_payment.payment_id,
            )

        await self.failed_log.resolve_for_order(
            order_id,
            f"Automatically reconciled with payment {gateway_payment.payment_id}",
            resolved_by="reconciliation",
            action="reconciled",
        )

        log.info("payment_reconciled",
                 order_id=order_id,
                 gateway_payment_id=gateway_payment.payment_id,
                 amount=payment.amount)
        return ReconcileItemResult(
            order_id=order_id,
            status=ReconcileStatus.SUCCESS,
            amount=result.payment.amount,
            currency=result.payment.currency,
            gateway_payment_id=gateway_payment.payment_id,
            gateway_status=gateway_payment.status,
        )

    async def _resolve_gateway_payment(
        self,
        client: PaymentGatewayClient,
        payment: Payment,
    ) -> tuple[Payment, Optional[GatewayPayment]]:
        if payment.gateway_payment_id:
            found = await client.fetch_payment(payment.gateway_payment_id, order_id=payment.order_id)
            return payment, found

        attempts = await client.fetch_payments_by_order(payment.order_id)
        if not attempts:
            return payment, None

        found = attempts[0]
        payment = await self.payments.save(payment.with_changes(gateway_payment_id=found.payment_id))
        return payment, found
