"""
Fulfillment Orchestrator
========================
One routine shared by the buyer verification path and the admin
reconciliation sweep. Runs as two phases:

Commit (must succeed, strictly sequential, serialized per order):
  1. user upsert           4. mark ledger row terminal + product snapshot
  2. product lookup        5. order-bump fan-out (concurrent, skip on failure)
  3. duplicate guard       6. entitlement grant (user.orders)
     (a second capture     7. set-password link for new users
      is failed + logged)
  Any failure flips the row to Failed, logs a FailedPayment, tags the
  contact Failed and raises EntitlementError.

Notify (best effort, concurrent):
  8. CRM status tag   9. invoice + email   10. conversion pixel
  Failures are collected into notify_failures and never alter the commit.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, Field

from errors import (
    DuplicateEntitlementError,
    EntitlementError,
    PaymentValidationError,
    ProductNotFoundError,
)
from pipeline.failed_payment_log import FailedPaymentLog
from repositories.interfaces import (
    IOrderBumpRepository,
    IPaymentRepository,
    IProductCatalog,
    IUserRepository,
)
from schemas.payment_models import (
    SUCCESS_STATUSES,
    ContactStatus,
    DigitalProduct,
    DigitalProductSnapshot,
    FailureContext,
    OrderBump,
    Payment,
    PaymentStatus,
    ProcessedBump,
    ProductType,
    User,
    build_snapshot,
)
from schemas.results import FulfillmentResult, FulfillmentStatus, StepFailure
from services.contact_sync import ContactTagSync
from services.invoice import InvoiceRenderer
from services.mailer import PurchaseMailer
from services.pixel_tracker import ConversionTracker
from services.reset_tokens import ResetTokenService

BumpRef = Union[str, dict]

DUPLICATE_PURCHASE_REASON = "Duplicate purchase"

STEP_CONTEXTS = {
    "user_upsert": FailureContext.USER_CREATION,
    "mark_payment": FailureContext.DATABASE_ERROR,
    "entitlement": FailureContext.DATABASE_ERROR,
}


class FulfillmentRequest(BaseModel):
    """A ledger row the caller has matched to a gateway capture"""
    payment: Payment
    gateway_payment_id: Optional[str] = None
    amount: Optional[float] = None
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    order_bumps: Optional[list[BumpRef]] = Field(default=None)

    @property
    def bump_refs(self) -> list[BumpRef]:
        if self.order_bumps is None:
            return list(self.payment.requested_bumps)
        return list(self.order_bumps)


@dataclass
class CommitState:
    status: FulfillmentStatus
    payment: Payment
    user: Optional[User] = None
    product: Any = None
    is_new_user: bool = False
    reset_link: Optional[str] = None
    bump_payments: list[Payment] = field(default_factory=list)


class FulfillmentOrchestrator:

    def __init__(
        self,
        payments: IPaymentRepository,
        users: IUserRepository,
        catalog: IProductCatalog,
        order_bumps: IOrderBumpRepository,
        failed_log: FailedPaymentLog,
        reset_tokens: ResetTokenService,
        contact_sync: ContactTagSync,
        invoices: InvoiceRenderer,
        mailer: PurchaseMailer,
        tracker: ConversionTracker,
    ):
        self.payments = payments
        self.users = users
        self.catalog = catalog
        self.order_bumps = order_bumps
        self.failed_log = failed_log
        self.reset_tokens = reset_tokens
        self.contact_sync = contact_sync
        self.invoices = invoices
        self.mailer = mailer
        self.tracker = tracker

        # Per-order locks, dropped once no caller holds or awaits them;
        # the ledger's unique constraint covers other processes
        self._order_locks: dict[str, asyncio.Lock] = {}
        self._order_lock_users: dict[str, int] = {}
        self._order_locks_mutex = asyncio.Lock()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="fulfillment",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    @asynccontextmanager
    async def _order_lock(self, order_id: str):
        async with self._order_locks_mutex:
            lock = self._order_locks.setdefault(order_id, asyncio.Lock())
            self._order_lock_users[order_id] = self._order_lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            async with self._order_locks_mutex:
                self._order_lock_users[order_id] -= 1
                if not self._order_lock_users[order_id]:
                    del self._order_lock_users[order_id]
                    del self._order_locks[order_id]

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def fulfill(
        self,
        request: FulfillmentRequest,
        terminal_status: PaymentStatus = PaymentStatus.SUCCESS,
        correlation_id: str = None,
    ) -> FulfillmentResult:
        log = self._get_logger(correlation_id)
        self._validate(request)

        async with self._order_lock(request.payment.order_id):
            state = await self.commit(request, terminal_status, log)

        if state.status == FulfillmentStatus.ALREADY_PAID:
            return FulfillmentResult(
                status=FulfillmentStatus.ALREADY_PAID,
                message="You have already purchased this product",
                payment=state.payment,
                user=state.user,
            )

        failures = await self.notify(state, terminal_status, request.bump_refs, log)

        log.info("fulfillment_complete",
                 order_id=state.payment.order_id,
                 status=state.payment.status.value,
                 bumps=len(state.bump_payments),
                 notify_failures=len(failures))

        return FulfillmentResult(
            status=FulfillmentStatus.SUCCESS,
            message=f"{state.payment.product_type.value} payment verified successfully",
            payment=state.payment,
            user=state.user,
            reset_link=state.reset_link,
            bump_payments=state.bump_payments,
            notify_failures=failures,
        )

    def _validate(self, request: FulfillmentRequest) -> None:
        payment = request.payment
        email = request.email or payment.email
        if not payment.order_id or not payment.product_id or not email:
            raise PaymentValidationError("Missing required payment parameters")

    # =========================================================================
    # PHASE 1: COMMIT
    # =========================================================================

    async def commit(
        self,
        request: FulfillmentRequest,
        terminal_status: PaymentStatus,
        log,
    ) -> CommitState:
        current = await self.payments.get(request.payment.payment_id) or request.payment
        if current.status in SUCCESS_STATUSES:
            log.info("fulfillment_already_paid", order_id=current.order_id, status=current.status.value)
            return CommitState(status=FulfillmentStatus.ALREADY_PAID, payment=current)

        email = (request.email or current.email).strip().lower()
        username = request.username or current.username
        phone = str(request.phone or current.phone or "")

        latest = current
        step = "user_upsert"
        try:
            # 1. User upsert
            user, is_new_user = await self._upsert_user(email, username, phone)

            # 2. Product lookup
            step = "product_lookup"
            product = await self.catalog.get_product(current.product_id, current.product_type)
            if product is None:
                raise ProductNotFoundError(
                    f"{current.product_type.value} {current.product_id} not found"
                )

            # 3. Duplicate-entitlement guard
            step = "duplicate_guard"
            existing = await self.payments.find_entitlement(
                email, current.product_id, current.product_type,
                exclude_payment_id=current.payment_id,
            )
            if existing:
                log.info("fulfillment_duplicate_entitlement",
                         order_id=current.order_id,
                         existing_order_id=existing.order_id)
                await self._reject_duplicate(current, existing, request, log)
                return CommitState(status=FulfillmentStatus.ALREADY_PAID, payment=existing, user=user)

            # 4. Mark payment terminal with a frozen product snapshot
            step = "mark_payment"
            now = datetime.utcnow()
            marked = current.transition_to(
                terminal_status,
                gateway_payment_id=request.gateway_payment_id or current.gateway_payment_id,
                amount=request.amount if request.amount is not None else current.amount,
                email=email,
                username=username,
                phone=phone,
                product_snapshot=build_snapshot(product),
                failure_reason=None,
                paid_at=current.paid_at or now,
                reconciled_at=now if terminal_status == PaymentStatus.RECONCILED else current.reconciled_at,
            )
            try:
                latest = await self.payments.save(marked)
            except DuplicateEntitlementError:
                log.info("fulfillment_duplicate_rejected_by_store", order_id=current.order_id)
                existing = await self.payments.find_entitlement(
                    email, current.product_id, current.product_type,
                    exclude_payment_id=current.payment_id,
                )
                await self._reject_duplicate(current, existing, request, log)
                return CommitState(
                    status=FulfillmentStatus.ALREADY_PAID,
                    payment=existing or current,
                    user=user,
                )

            # 5. Order-bump fan-out
            step = "order_bumps"
            bump_payments = await self._fan_out_bumps(latest, request.bump_refs, log)
            if bump_payments:
                latest = await self.payments.save(latest.with_changes(
                    order_bumps=[self._summarize_bump(b) for b in bump_payments],
                ))

            # 6. Entitlement grant
            step = "entitlement"
            user = await self._grant_entitlement(user, latest, terminal_status)

            # 7. Set-password link for accounts created by this purchase
            step = "reset_link"
            reset_link = None
            if is_new_user:
                token = await self.reset_tokens.issue(user)
                if token:
                    reset_link = self.reset_tokens.build_set_password_link(token, email)

        except ProductNotFoundError as e:
            log.warning("fulfillment_product_missing",
                        order_id=current.order_id,
                        product_id=current.product_id)
            await self.failed_log.record(
                e, FailureContext.PAYMENT_PROCESSING,
                payment=current,
                payment_data={"order_bumps": request.bump_refs},
            )
            raise
        except Exception as e:
            context = STEP_CONTEXTS.get(step, FailureContext.PAYMENT_PROCESSING)
            log.error("fulfillment_commit_failed",
                      order_id=current.order_id,
                      step=step,
                      error=str(e),
                      error_type=type(e).__name__)
            await self._fail_payment(latest, e, context, request, log)
            raise EntitlementError(current.order_id, e, context=context) from e

        log.info("fulfillment_committed",
                 order_id=latest.order_id,
                 status=latest.status.value,
                 new_user=is_new_user)

        return CommitState(
            status=FulfillmentStatus.SUCCESS,
            payment=latest,
            user=user,
            product=product,
            is_new_user=is_new_user,
            reset_link=reset_link,
            bump_payments=bump_payments,
        )

    async def _upsert_user(self, email: str, username: str, phone: str) -> tuple[User, bool]:
        user = await self.users.get_by_email(email)
        if user:
            return user, False
        user = await self.users.save(User(username=username, email=email, phone=phone, orders=[]))
        return user, True

    async def _grant_entitlement(self, user: User, payment: Payment, terminal_status: PaymentStatus) -> User:
        user = await self.users.get(user.user_id) or user
        updates: dict[str, Any] = {}
        if payment.order_id not in user.orders:
            updates["orders"] = [*user.orders, payment.order_id]
        if terminal_status == PaymentStatus.RECONCILED:
            updates["reconciled_payments"] = user.reconciled_payments + 1
        if not updates:
            return user
        return await self.users.save(user.model_copy(update=updates))

    async def _reject_duplicate(
        self,
        current: Payment,
        existing: Optional[Payment],
        request: FulfillmentRequest,
        log,
    ) -> Payment:
        """A second capture for an owned product is failed and logged for refund."""
        reason = DUPLICATE_PURCHASE_REASON
        if existing is not None:
            reason = f"{DUPLICATE_PURCHASE_REASON}: already entitled via order {existing.order_id}"
        if current.status == PaymentStatus.FAILED and current.failure_reason == reason:
            return current

        gateway_payment_id = request.gateway_payment_id or current.gateway_payment_id
        failed = await self.payments.save(current.transition_to(
            PaymentStatus.FAILED,
            gateway_payment_id=gateway_payment_id,
            failure_reason=reason,
        ))
        await self.failed_log.record(
            reason,
            FailureContext.PAYMENT_PROCESSING,
            payment=failed,
            gateway_payment_id=gateway_payment_id,
            error_code="DUPLICATE_ENTITLEMENT",
            metadata={"existing_order_id": existing.order_id if existing else None},
        )
        log.warning("fulfillment_duplicate_capture_failed",
                    order_id=current.order_id,
                    gateway_payment_id=gateway_payment_id)
        return failed

    async def _fail_payment(
        self,
        payment: Payment,
        error: Exception,
        context: FailureContext,
        request: FulfillmentRequest,
        log,
    ) -> None:
        failed = payment.transition_to(PaymentStatus.FAILED, failure_reason=str(error) or type(error).__name__)
        outcomes = await asyncio.gather(
            self.payments.save(failed),
            self.failed_log.record(
                error, context,
                payment=payment,
                gateway_payment_id=request.gateway_payment_id,
                payment_data={
                    "original_payment_id": payment.payment_id,
                    "order_bumps": request.bump_refs,
                },
            ),
            self.contact_sync.apply_status(
                payment.email, ContactStatus.FAILED,
                username=payment.username, phone=payment.phone,
            ),
            return_exceptions=True,
        )
        for name, outcome in zip(("ledger", "failed_log", "crm"), outcomes):
            if isinstance(outcome, Exception):
                log.error("failure_bookkeeping_error", target=name, error=str(outcome))

    # =========================================================================
    # ORDER BUMPS
    # =========================================================================

    async def _fan_out_bumps(self, parent: Payment, refs: list[BumpRef], log) -> list[Payment]:
        if not refs:
            return []

        existing = {
            p.product_id: p
            for p in await self.payments.list_by_order_id(parent.order_id)
            if p.is_order_bump
        }
        outcomes = await asyncio.gather(
            *(self._create_bump_payment(parent, ref, existing, log) for ref in refs),
            return_exceptions=True,
        )

        created = []
        for ref, outcome in zip(refs, outcomes):
            if isinstance(outcome, Exception):
                log.warning("order_bump_skipped", order_id=parent.order_id, bump=str(ref), error=str(outcome))
            elif outcome is not None:
                created.append(outcome)
        return created

    async def resolve_bump(self, ref: BumpRef) -> Optional[OrderBump]:
        if isinstance(ref, str):
            return await self.order_bumps.get(ref)
        if isinstance(ref, dict) and ref.get("product_id"):
            return await self.order_bumps.get_by_bump_product(ref["product_id"])
        return None

    async def _create_bump_payment(
        self,
        parent: Payment,
        ref: BumpRef,
        existing: dict[str, Payment],
        log,
    ) -> Optional[Payment]:
        bump = await self.resolve_bump(ref)
        if bump is None or not bump.is_active:
            log.warning("order_bump_not_found", order_id=parent.order_id, bump=str(ref))
            return None

        if bump.bump_product in existing:
            return existing[bump.bump_product]

        product = await self.catalog.get_product(bump.bump_product, ProductType.DIGITAL_PRODUCT)
        if not isinstance(product, DigitalProduct):
            error = ProductNotFoundError(f"Bump product not found for bump {bump.bump_id}")
            await self.failed_log.record(
                error, FailureContext.ORDER_BUMP,
                payment=parent,
                payment_data={"bump_id": bump.bump_id},
            )
            return None

        bump_payment = Payment(
            order_id=parent.order_id,
            gateway=parent.gateway,
            gateway_payment_id=parent.gateway_payment_id,
            username=parent.username,
            email=parent.email,
            phone=parent.phone,
            product_id=product.id,
            product_type=ProductType.DIGITAL_PRODUCT,
            product_snapshot=DigitalProductSnapshot(
                title=bump.display_name,
                description=bump.description,
                images=list(product.images),
                regular_price=bump.bump_price,
                sales_price=bump.bump_price,
                file_url=product.file_url,
                external_url=product.external_url,
            ),
            amount=bump.bump_price,
            currency=parent.currency,
            status=PaymentStatus.SUCCESS,
            is_order_bump=True,
            parent_order=parent.order_id,
            paid_at=datetime.utcnow(),
        )
        try:
            saved = await self.payments.save(bump_payment)
        except DuplicateEntitlementError:
            log.info("order_bump_already_owned", order_id=parent.order_id, product_id=product.id)
            return None
        except Exception as e:
            await self.failed_log.record(
                e, FailureContext.ORDER_BUMP,
                payment=parent,
                payment_data=bump_payment.model_dump(mode="json"),
                metadata={"bump_id": bump.bump_id},
            )
            raise

        await self.order_bumps.increment_conversions(bump.bump_id)
        log.info("order_bump_created", order_id=parent.order_id, bump_id=bump.bump_id, amount=bump.bump_price)
        return saved

    @staticmethod
    def _summarize_bump(bump_payment: Payment) -> ProcessedBump:
        snapshot = bump_payment.product_snapshot
        return ProcessedBump(
            bump_id=bump_payment.payment_id,
            product_id=bump_payment.product_id,
            title=snapshot.title if snapshot else bump_payment.product_id,
            amount=bump_payment.amount,
            file_url=getattr(snapshot, "file_url", None),
            external_url=getattr(snapshot, "external_url", None),
        )

    # =========================================================================
    # PHASE 2: NOTIFY
    # =========================================================================

    async def notify(
        self,
        state: CommitState,
        terminal_status: PaymentStatus,
        bump_refs: list[BumpRef],
        log,
    ) -> list[StepFailure]:
        payment = state.payment
        title = payment.product_snapshot.title if payment.product_snapshot else payment.product_id
        contact_status = (
            ContactStatus.RECONCILED if terminal_status == PaymentStatus.RECONCILED
            else ContactStatus.SUCCESS
        )

        steps = ("crm_sync", "invoice_email", "conversion_tracking")
        outcomes = await asyncio.gather(
            self.contact_sync.apply_status(
                payment.email, contact_status,
                username=payment.username, phone=payment.phone,
            ),
            self._send_receipt(payment, title, state.reset_link),
            self.tracker.track_purchase(
                payment, payment.product_id, title,
                [str(r.get("product_id")) if isinstance(r, dict) else r for r in bump_refs],
            ),
            return_exceptions=True,
        )

        failures = []
        for step, outcome in zip(steps, outcomes):
            if isinstance(outcome, Exception):
                log.warning("notify_step_failed", order_id=payment.order_id, step=step, error=str(outcome))
                failures.append(StepFailure(step=step, error=str(outcome) or type(outcome).__name__))
        return failures

    async def _send_receipt(self, payment: Payment, title: str, reset_link: Optional[str]) -> None:
        try:
            invoice_path = await self.invoices.render(payment, title)
            await self.mailer.send_purchase_confirmation(
                payment.email, payment, title,
                invoice_path=invoice_path,
                reset_link=reset_link,
            )
        except Exception as e:
            await self.failed_log.record(e, FailureContext.EMAIL_SENDING, payment=payment)
            raise
