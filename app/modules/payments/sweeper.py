"""Poll the gateway for purchases left pending by both channels."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from pydantic import ValidationError

from app.core.config import Settings
from app.core.database import utc_now
from app.core.metrics import record_reconcile_outcome
from app.modules.payments.gateway import PaymentGateway
from app.modules.payments.retry import ReconcileRetryDriver
from app.modules.payments.store import LedgerStore
from app.shared.exceptions import AppException

logger = logging.getLogger(__name__)

CHANNEL_PENDING_SWEEP = "pending_sweep"


class PendingTransactionSweeper:
    """Reconcile stale PENDING transactions from the gateway's view.

    A row that cannot be settled in a cycle is pushed back with a growing
    delay, so rows that keep failing never starve newer ones.
    """

    def __init__(
        self,
        store: LedgerStore,
        driver: ReconcileRetryDriver,
        gateway: PaymentGateway,
        *,
        min_age_minutes: int = 10,
        batch_size: int = 50,
        retry_base_minutes: int = 5,
        retry_max_minutes: int = 360,
        now_provider=utc_now,
    ) -> None:
        self.store = store
        self.driver = driver
        self.gateway = gateway
        self.min_age_minutes = min_age_minutes
        self.batch_size = batch_size
        self.retry_base_minutes = retry_base_minutes
        self.retry_max_minutes = retry_max_minutes
        self.now_provider = now_provider

    @classmethod
    def from_settings(
        cls,
        store: LedgerStore,
        driver: ReconcileRetryDriver,
        gateway: PaymentGateway,
        settings: Settings,
    ) -> "PendingTransactionSweeper":
        return cls(
            store,
            driver,
            gateway,
            min_age_minutes=settings.pending_sweep_min_age_minutes,
            batch_size=settings.pending_sweep_batch_size,
            retry_base_minutes=settings.pending_sweep_retry_base_minutes,
            retry_max_minutes=settings.pending_sweep_retry_max_minutes,
        )

    async def run_once(self) -> dict[str, int]:
        """Run one sweep cycle."""
        stats = {"checked": 0, "applied": 0, "still_pending": 0, "failed": 0}
        now = self.now_provider()
        created_before = now - timedelta(minutes=self.min_age_minutes)
        async with self.store.atomic(read_only=True) as unit:
            pending = await unit.ledger.list_stale_pending_transactions(created_before, now, self.batch_size)
            candidates = [
                (item.id, item.purchase_reference, item.payer_id, item.course_id, item.sweep_attempts)
                for item in pending
            ]

        for transaction_id, purchase_reference, payer_id, course_id, attempts in candidates:
            stats["checked"] += 1
            try:
                status = await self.gateway.retrieve_payment_status(purchase_reference)
                if status.outcome is None:
                    stats["still_pending"] += 1
                    await self._defer(transaction_id, attempts, now)
                    continue
                event = status.to_event(payer_id=payer_id, course_id=course_id)
            except (AppException, ValidationError) as exc:
                logger.warning("Pending payment %s could not be checked: %s", purchase_reference, exc)
                stats["failed"] += 1
                await self._defer(transaction_id, attempts, now)
                continue

            outcome = await self.driver.with_retry(event)
            record_reconcile_outcome(CHANNEL_PENDING_SWEEP, str(outcome.kind))
            if outcome.is_applied:
                stats["applied"] += 1
            else:
                logger.error(
                    "Pending payment %s not reconciled: %s %s",
                    purchase_reference,
                    outcome.kind,
                    outcome.message,
                )
                stats["failed"] += 1
                await self._defer(transaction_id, attempts, now)
        return stats

    def next_sweep_at(self, attempts: int, now: datetime) -> datetime:
        """Due time after ``attempts`` earlier unsuccessful sweeps."""
        delay_minutes = min(self.retry_max_minutes, self.retry_base_minutes * (2**attempts))
        return now + timedelta(minutes=delay_minutes)

    async def _defer(self, transaction_id: UUID, attempts: int, now: datetime) -> None:
        async with self.store.atomic() as unit:
            await unit.ledger.defer_pending_sweep(transaction_id, self.next_sweep_at(attempts, now))
