"""
Service Wiring
==============
Builds the object graph shared by the HTTP server and the background
reconciliation loop. ``DATABASE_URL`` selects Postgres repositories;
without it everything runs in memory.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from config import settings
from database import Database
from gateways import CashfreeClient, GatewayRegistry, RazorpayClient
from pipeline.admin import PaymentAdmin
from pipeline.checkout import CheckoutService
from pipeline.failed_payment_log import FailedPaymentLog
from pipeline.fulfillment import FulfillmentOrchestrator
from pipeline.reconciliation import ReconciliationSweep
from pipeline.verification import PaymentVerifier
from repositories import (
    IContactRepository,
    IFailedPaymentRepository,
    IOrderBumpRepository,
    IPaymentRepository,
    IProductCatalog,
    ITagRepository,
    IUserRepository,
    InMemoryContactRepository,
    InMemoryFailedPaymentRepository,
    InMemoryOrderBumpRepository,
    InMemoryPaymentRepository,
    InMemoryProductCatalog,
    InMemoryTagRepository,
    InMemoryUserRepository,
    PostgresContactRepository,
    PostgresFailedPaymentRepository,
    PostgresOrderBumpRepository,
    PostgresPaymentRepository,
    PostgresProductCatalog,
    PostgresTagRepository,
    PostgresUserRepository,
)
from services.contact_sync import ContactTagSync
from services.invoice import InvoiceRenderer
from services.mailer import PurchaseMailer
from services.pixel_tracker import ConversionTracker
from services.reset_tokens import ResetTokenService

logger = structlog.get_logger().bind(component="container")


@dataclass
class PaymentServices:
    payments: IPaymentRepository
    failed_payments: IFailedPaymentRepository
    users: IUserRepository
    contacts: IContactRepository
    tags: ITagRepository
    catalog: IProductCatalog
    order_bumps: IOrderBumpRepository
    gateways: GatewayRegistry
    failed_log: FailedPaymentLog
    reset_tokens: ResetTokenService
    contact_sync: ContactTagSync
    orchestrator: FulfillmentOrchestrator
    verifier: PaymentVerifier
    sweep: ReconciliationSweep
    admin: PaymentAdmin
    checkout: CheckoutService
    tracker: ConversionTracker
    uses_database: bool = False

    @classmethod
    def assemble(
        cls,
        *,
        payments: IPaymentRepository,
        failed_payments: IFailedPaymentRepository,
        users: IUserRepository,
        contacts: IContactRepository,
        tags: ITagRepository,
        catalog: IProductCatalog,
        order_bumps: IOrderBumpRepository,
        gateways: GatewayRegistry,
        invoices: Optional[InvoiceRenderer] = None,
        mailer: Optional[PurchaseMailer] = None,
        tracker: Optional[ConversionTracker] = None,
        uses_database: bool = False,
    ) -> "PaymentServices":
        failed_log = FailedPaymentLog(failed_payments)
        reset_tokens = ResetTokenService(users)
        contact_sync = ContactTagSync(contacts, tags)
        tracker = tracker or ConversionTracker()

        orchestrator = FulfillmentOrchestrator(
            payments=payments,
            users=users,
            catalog=catalog,
            order_bumps=order_bumps,
            failed_log=failed_log,
            reset_tokens=reset_tokens,
            contact_sync=contact_sync,
            invoices=invoices or InvoiceRenderer(),
            mailer=mailer or PurchaseMailer(),
            tracker=tracker,
        )
        verifier = PaymentVerifier(payments, gateways, orchestrator, failed_log)
        sweep = ReconciliationSweep(payments, gateways, orchestrator, failed_log)

        return cls(
            payments=payments,
            failed_payments=failed_payments,
            users=users,
            contacts=contacts,
            tags=tags,
            catalog=catalog,
            order_bumps=order_bumps,
            gateways=gateways,
            failed_log=failed_log,
            reset_tokens=reset_tokens,
            contact_sync=contact_sync,
            orchestrator=orchestrator,
            verifier=verifier,
            sweep=sweep,
            admin=PaymentAdmin(payments, failed_payments, users, gateways, sweep, failed_log),
            checkout=CheckoutService(payments, catalog, order_bumps, gateways),
            tracker=tracker,
            uses_database=uses_database,
        )

    @classmethod
    def in_memory(cls, gateways: Optional[GatewayRegistry] = None, **overrides) -> "PaymentServices":
        parts = dict(
            payments=InMemoryPaymentRepository(),
            failed_payments=InMemoryFailedPaymentRepository(),
            users=InMemoryUserRepository(),
            contacts=InMemoryContactRepository(),
            tags=InMemoryTagRepository(),
            catalog=InMemoryProductCatalog(),
            order_bumps=InMemoryOrderBumpRepository(),
        )
        parts.update(overrides)
        return cls.assemble(gateways=gateways or default_gateways(), **parts)

    @classmethod
    def postgres(cls, gateways: Optional[GatewayRegistry] = None, **overrides) -> "PaymentServices":
        return cls.assemble(
            payments=PostgresPaymentRepository(),
            failed_payments=PostgresFailedPaymentRepository(),
            users=PostgresUserRepository(),
            contacts=PostgresContactRepository(),
            tags=PostgresTagRepository(),
            catalog=PostgresProductCatalog(),
            order_bumps=PostgresOrderBumpRepository(),
            gateways=gateways or default_gateways(),
            uses_database=True,
            **overrides,
        )

    async def startup(self) -> None:
        if self.uses_database:
            await Database.initialize()

    async def shutdown(self) -> None:
        await self.gateways.close()
        await self.tracker.close()
        if self.uses_database:
            await Database.close()


def default_gateways() -> GatewayRegistry:
    registry = GatewayRegistry()
    registry.register(RazorpayClient())
    registry.register(CashfreeClient())
    return registry


def build_services() -> PaymentServices:
    """Wire services from settings"""
    if settings.DATABASE_URL:
        logger.info("services_using_postgres")
        return PaymentServices.postgres()
    logger.info("services_using_memory")
    return PaymentServices.in_memory()
