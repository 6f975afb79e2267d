"""
Reconciliation Loop - The Safety Net
====================================
Background task that finds ledger rows stuck in Pending/Failed and runs
them through the reconciliation sweep, so a buyer whose callback never
arrived is still entitled once the gateway confirms the capture.

- Runs every CHECK_INTERVAL seconds
- Picks rows untouched for STALE_THRESHOLD minutes, in batches
- Orders that exhaust MAX_ATTEMPTS are escalated and left for an operator
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from pipeline.reconciliation import ALREADY_FULFILLED, ReconciliationSweep
from repositories.interfaces import IPaymentRepository
from schemas.payment_models import RECONCILABLE_STATUSES
from schemas.results import ReconciliationReport

# Configure logger
logger = structlog.get_logger().bind(component="reconciliation_loop")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconciliationLoopConfig:
    """Reconciliation loop configuration"""

    # How often to sweep (seconds)
    CHECK_INTERVAL = int(os.getenv("RECONCILE_INTERVAL", "300"))

    # Minutes since last update before a row is considered stale
    STALE_THRESHOLD = int(os.getenv("RECONCILE_STALE_MINUTES", "10"))

    # Maximum orders per cycle
    BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "25"))

    # Attempts before escalating to manual review
    MAX_ATTEMPTS = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "5"))

    ENABLED = os.getenv("RECONCILE_ENABLED", "true").lower() == "true"


config = ReconciliationLoopConfig()


# =============================================================================
# LOOP
# =============================================================================

class ReconciliationLoop:

    def __init__(
        self,
        payments: IPaymentRepository,
        sweep: ReconciliationSweep,
        loop_config: ReconciliationLoopConfig = config,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.payments = payments
        self.sweep = sweep
        self.config = loop_config
        self._clock = clock
        self._attempts: dict[str, int] = {}
        self._escalated: set[str] = set()
        self._stop = asyncio.Event()
        self._stats = {
            "cycles": 0,
            "reconciled": 0,
            "failed": 0,
            "errors": 0,
            "escalated": 0,
            "last_run": None,
        }

    async def run_cycle(self) -> Optional[ReconciliationReport]:
        """One sweep over stale rows; returns None when nothing was due."""
        cutoff = self._clock() - timedelta(minutes=self.config.STALE_THRESHOLD)
        stale = await self.payments.list_by_status(
            RECONCILABLE_STATUSES,
            older_than=cutoff,
            limit=self.config.BATCH_SIZE + len(self._escalated),
        )

        due = []
        for payment in stale:
            order_id = payment.order_id
            if order_id in self._escalated:
                continue
            if self._attempts.get(order_id, 0) >= self.config.MAX_ATTEMPTS:
                self._escalate(order_id, payment.status.value)
                continue
            due.append(order_id)
        due = due[:self.config.BATCH_SIZE]

        self._stats["cycles"] += 1
        self._stats["last_run"] = self._clock().isoformat()

        if not due:
            return None

        logger.warning("stale_payments_found", count=len(due))
        report = await self.sweep.reconcile(due)

        settled = report.details.succeeded + [
            item for item in report.details.skipped if item.reason != ALREADY_FULFILLED
        ]
        for item in settled:
            self._attempts.pop(item.order_id, None)
        # Rows owned by another order stay Failed; they escalate like any other failure
        unsettled = report.details.failed + report.details.errors + [
            item for item in report.details.skipped if item.reason == ALREADY_FULFILLED
        ]
        for item in unsettled:
            self._attempts[item.order_id] = self._attempts.get(item.order_id, 0) + 1

        self._stats["reconciled"] += report.summary.succeeded
        self._stats["failed"] += report.summary.failed
        self._stats["errors"] += report.summary.errors

        logger.info("reconciliation_cycle_complete", **report.summary.model_dump())
        return report

    def _escalate(self, order_id: str, status: str) -> None:
        self._escalated.add(order_id)
        self._stats["escalated"] += 1
        logger.critical("reconciliation_requires_manual_intervention",
                        order_id=order_id,
                        status=status,
                        attempts=self._attempts.get(order_id, 0))

    async def run_forever(self) -> None:
        logger.info("reconciliation_loop_started",
                    interval=self.config.CHECK_INTERVAL,
                    threshold=self.config.STALE_THRESHOLD,
                    enabled=self.config.ENABLED)

        if not self.config.ENABLED:
            logger.info("reconciliation_loop_disabled")
            return

        while not self._stop.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("reconciliation_loop_error", error=str(e), error_type=type(e).__name__)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.config.CHECK_INTERVAL)
            except asyncio.TimeoutError:
                pass

        logger.info("reconciliation_loop_stopped")

    def stop(self) -> None:
        self._stop.set()

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "enabled": self.config.ENABLED,
            "interval_seconds": self.config.CHECK_INTERVAL,
            "threshold_minutes": self.config.STALE_THRESHOLD,
            "pending_attempts": dict(self._attempts),
            "escalated_orders": sorted(self._escalated),
        }
