"""
Payment Administration
======================
Operator-facing reads over the ledger and the failure log, plus manual
retry of individual failure records.
"""

import math

import structlog
from pydantic import ValidationError

from errors import (
    AlreadyResolvedError,
    DuplicateEntitlementError,
    FailedPaymentNotFoundError,
    PaymentNotFoundError,
)
from gateways.base import GatewayError, GatewayRegistry
from pipeline.failed_payment_log import FailedPaymentLog
from pipeline.reconciliation import ReconciliationSweep
from repositories.interfaces import (
    IFailedPaymentRepository,
    IPaymentRepository,
    IUserRepository,
)
from schemas.payment_models import FailedPayment, FailureContext, Payment, PaymentStatus
from schemas.results import (
    FailedPaymentPage,
    PaymentDetails,
    PaymentSummary,
    ReconcileStatus,
    RetryResult,
)

# Contexts whose fix is "ask the gateway again"
RECONCILE_CONTEXTS = (
    FailureContext.PAYMENT_PROCESSING,
    FailureContext.ORDER_VERIFICATION,
    FailureContext.USER_CREATION,
)


class PaymentAdmin:

    def __init__(
        self,
        payments: IPaymentRepository,
        failed_payments: IFailedPaymentRepository,
        users: IUserRepository,
        gateways: GatewayRegistry,
        sweep: ReconciliationSweep,
        failed_log: FailedPaymentLog,
    ):
        self.payments = payments
        self.failed_payments = failed_payments
        self.users = users
        self.gateways = gateways
        self.sweep = sweep
        self.failed_log = failed_log
        self._logger = structlog.get_logger().bind(component="payment_admin")

    # =========================================================================
    # RETRY
    # =========================================================================

    async def retry_failed_payment(self, failed_payment_id: str, resolved_by: str = "admin") -> RetryResult:
        record = await self.failed_payments.get(failed_payment_id)
        if record is None:
            raise FailedPaymentNotFoundError(f"Failed payment {failed_payment_id} not found")
        if record.resolved:
            raise AlreadyResolvedError("This payment has already been resolved")

        self._logger.info("retry_failed_payment",
                          failed_payment_id=failed_payment_id,
                          context=record.context.value,
                          order_id=record.order_id)

        if record.context == FailureContext.ORDER_BUMP:
            return await self._replay_payment(record, resolved_by, "Order bump payment recreated")

        if record.context == FailureContext.DATABASE_ERROR and _is_payment_payload(record.payment_data):
            return await self._replay_payment(record, resolved_by, "Payment record restored")

        if record.context in RECONCILE_CONTEXTS or record.context == FailureContext.DATABASE_ERROR:
            return await self._retry_via_reconcile(record, resolved_by)

        await self.failed_log.resolve(
            record.failed_payment_id, "Manually resolved by admin", resolved_by, action="manual",
        )
        return RetryResult(success=True, status="resolved", message="Manually resolved by admin")

    async def _replay_payment(self, record: FailedPayment, resolved_by: str, message: str) -> RetryResult:
        if not _is_payment_payload(record.payment_data):
            return RetryResult(
                success=False,
                status="unresolved",
                message="No payment data available to replay",
            )
        try:
            payment = Payment.model_validate(record.payment_data)
        except ValidationError as e:
            return RetryResult(success=False, status="unresolved", message=f"Invalid payment data: {e}")

        try:
            await self.payments.save(payment)
        except DuplicateEntitlementError:
            message = "Payment already exists"

        await self.failed_log.resolve(record.failed_payment_id, message, resolved_by, action="recreated")
        return RetryResult(success=True, status="retried", message=message)

    async def _retry_via_reconcile(self, record: FailedPayment, resolved_by: str) -> RetryResult:
        item = await self.sweep.reconcile_order(record.order_id)

        if item.status == ReconcileStatus.SUCCESS:
            # The sweep resolved every open record for the order
            return RetryResult(success=True, status="retried", message="Payment reconciled", reconciliation=item)

        payment = await self.payments.get_by_order_id(record.order_id)
        if item.status == ReconcileStatus.SKIPPED and payment and payment.is_entitled:
            await self.failed_log.resolve(
                record.failed_payment_id, "Payment already fulfilled", resolved_by, action="verified",
            )
            return RetryResult(success=True, status="resolved", message="Payment already fulfilled", reconciliation=item)

        return RetryResult(
            success=False,
            status="unresolved",
            message=item.reason or item.error or "Reconciliation did not succeed",
            reconciliation=item,
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def get_payment_summary(self) -> PaymentSummary:
        counts = await self.payments.count_by_status()
        return PaymentSummary(
            total=sum(counts.values()),
            success=counts.get(PaymentStatus.SUCCESS.value, 0),
            failed=counts.get(PaymentStatus.FAILED.value, 0),
            reconciled=counts.get(PaymentStatus.RECONCILED.value, 0),
            pending=counts.get(PaymentStatus.PENDING.value, 0),
        )

    async def list_failed_payments(self, page: int = 1, limit: int = 20) -> FailedPaymentPage:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        rows, total = await self.failed_log.list_unresolved(page, limit)
        return FailedPaymentPage(
            data=rows,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
            current_page=page,
        )

    async def get_payment_details(self, order_id: str) -> PaymentDetails:
        payment = await self.payments.get_by_order_id(order_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment not found for order {order_id}")

        gateway_payment = None
        if payment.gateway_payment_id:
            try:
                client = self.gateways.get(payment.gateway)
                gateway_payment = await client.fetch_payment(payment.gateway_payment_id, order_id=order_id)
            except (GatewayError, KeyError) as e:
                self._logger.warning("gateway_details_unavailable", order_id=order_id, error=str(e))

        user = await self.users.get_by_email(payment.email)
        bumps = [p for p in await self.payments.list_by_order_id(order_id) if p.is_order_bump]
        return PaymentDetails(
            payment=payment,
            gateway_payment=gateway_payment,
            user=user,
            bump_payments=bumps,
        )


def _is_payment_payload(data: dict) -> bool:
    return bool(data) and all(k in data for k in ("order_id", "product_id", "email", "amount"))
