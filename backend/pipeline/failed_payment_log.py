"""
Failed-Payment Log
==================
Durable diagnostic trail for workflow failures, independent of the ledger.
Recording never raises: a failure to record is itself logged as CRITICAL
with the full payload so nothing is silently lost.
"""

import traceback
from typing import Any, Optional, Union

import structlog

from repositories.interfaces import IFailedPaymentRepository
from schemas.payment_models import (
    Customer,
    FailedPayment,
    FailureContext,
    Gateway,
    Payment,
)


def _coerce_context(context: Union[FailureContext, str, None]) -> FailureContext:
    try:
        return FailureContext(context)
    except ValueError:
        return FailureContext.OTHER


class FailedPaymentLog:

    def __init__(self, repo: IFailedPaymentRepository):
        self.repo = repo
        self._logger = structlog.get_logger().bind(component="failed_payment_log")

    async def record(
        self,
        error: Union[Exception, str],
        context: Union[FailureContext, str, None] = FailureContext.PAYMENT_PROCESSING,
        *,
        payment: Optional[Payment] = None,
        order_id: Optional[str] = None,
        customer: Optional[Customer] = None,
        gateway_payment_id: Optional[str] = None,
        gateway_amount: Optional[float] = None,
        gateway_status: Optional[str] = None,
        error_code: Optional[str] = None,
        payment_data: Optional[dict] = None,
        metadata: Optional[dict] = None,
        **overrides: Any,
    ) -> Optional[FailedPayment]:
        """Append a failure record; returns None if the write itself failed."""
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            error_code = error_code or getattr(error, "code", None) or type(error).__name__
        else:
            message = str(error or "Unknown error")
            stack = "".join(traceback.format_stack(limit=8))

        fields: dict[str, Any] = {
            "order_id": order_id or (payment.order_id if payment else "unknown"),
            "error": message,
            "error_code": error_code,
            "stack_trace": stack,
            "context": _coerce_context(context),
            "gateway_payment_id": gateway_payment_id,
            "gateway_amount": gateway_amount,
            "gateway_status": gateway_status,
            "payment_data": payment_data or {},
            "metadata": metadata or {},
        }
        if payment is not None:
            fields.update({
                "gateway": payment.gateway,
                "gateway_order_id": payment.order_id,
                "gateway_payment_id": gateway_payment_id or payment.gateway_payment_id,
                "product_id": payment.product_id,
                "product_type": payment.product_type,
                "amount": payment.amount,
                "currency": payment.currency,
                "customer": customer or payment.customer,
            })
        elif customer is not None:
            fields["customer"] = customer
        fields.update(overrides)

        try:
            record = await self.repo.save(FailedPayment(**fields))
        except Exception as e:
            self._logger.critical("failed_payment_not_recorded",
                                  error=str(e),
                                  original_error=message,
                                  failure=repr(fields))
            return None

        self._logger.warning("failed_payment_recorded",
                             failed_payment_id=record.failed_payment_id,
                             order_id=record.order_id,
                             context=record.context.value,
                             error=message)
        return record

    async def resolve(
        self,
        failed_payment_id: str,
        notes: str,
        resolved_by: str = "system",
        action: Optional[str] = None,
    ) -> Optional[FailedPayment]:
        record = await self.repo.get(failed_payment_id)
        if record is None:
            return None
        resolved = await self.repo.save(record.resolve(notes, resolved_by, action))
        self._logger.info("failed_payment_resolved",
                          failed_payment_id=failed_payment_id,
                          resolved_by=resolved_by,
                          action=action)
        return resolved

    async def resolve_for_order(
        self,
        order_id: str,
        notes: str,
        resolved_by: str = "system",
        action: Optional[str] = None,
    ) -> int:
        """Resolve every open record for an order; returns how many changed."""
        open_records = await self.repo.list_by_order_id(order_id, unresolved_only=True)
        for record in open_records:
            await self.repo.save(record.resolve(notes, resolved_by, action))
        if open_records:
            self._logger.info("failed_payments_resolved_for_order",
                              order_id=order_id,
                              count=len(open_records),
                              action=action)
        return len(open_records)

    async def list_unresolved(self, page: int = 1, limit: int = 20) -> tuple[list[FailedPayment], int]:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        rows = await self.repo.list_unresolved(offset=(page - 1) * limit, limit=limit)
        total = await self.repo.count_unresolved()
        return rows, total
