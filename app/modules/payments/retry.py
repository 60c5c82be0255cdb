"""Bounded retry with exponential backoff around reconciliation."""

from __future__ import annotations

import asyncio
import logging

from app.core.config import Settings
from app.core.enums import ReconcileOutcomeEnum
from app.core.metrics import RECONCILE_CONFLICTS_TOTAL
from app.modules.payments.reconciler import ReconcileOutcome, Reconciler
from app.modules.payments.schemas import PaymentOutcomeEvent

logger = logging.getLogger(__name__)


class ReconcileRetryDriver:
    """Retry transient ledger conflicts, then fall back to an applied-state check.

    Only ``CONFLICT`` outcomes are retried. After ``max_attempts`` conflicting
    attempts exactly one read-only check runs: if a concurrent channel already
    applied the event the call still succeeds, otherwise the caller receives
    ``RETRY_EXHAUSTED``.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        max_attempts: int = 3,
        base_delay_ms: int = 100,
        sleep=asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.reconciler = reconciler
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.sleep = sleep

    @classmethod
    def from_settings(cls, reconciler: Reconciler, settings: Settings) -> "ReconcileRetryDriver":
        return cls(
            reconciler,
            max_attempts=settings.reconcile_max_attempts,
            base_delay_ms=settings.reconcile_base_delay_ms,
        )

    async def with_retry(self, event: PaymentOutcomeEvent) -> ReconcileOutcome:
        for attempt in range(self.max_attempts):
            outcome = await self.reconciler.reconcile(event)
            if outcome.kind != ReconcileOutcomeEnum.CONFLICT:
                return outcome

            RECONCILE_CONFLICTS_TOTAL.inc()
            if attempt + 1 < self.max_attempts:
                delay_seconds = self.backoff_seconds(attempt)
                logger.info(
                    "Retrying reconciliation of %s in %.3fs (attempt %d/%d)",
                    event.purchase_reference,
                    delay_seconds,
                    attempt + 1,
                    self.max_attempts,
                )
                await self.sleep(delay_seconds)

        result = await self.reconciler.check_applied(event)
        if result is not None:
            logger.info(
                "Reconciliation of %s already applied by a concurrent channel",
                event.purchase_reference,
            )
            return ReconcileOutcome.applied(result)

        logger.error(
            "Reconciliation of %s exhausted %d attempts",
            event.purchase_reference,
            self.max_attempts,
        )
        return ReconcileOutcome.failure(
            ReconcileOutcomeEnum.RETRY_EXHAUSTED,
            f"Reconciliation of {event.purchase_reference} did not complete after "
            f"{self.max_attempts} attempts",
        )

    def backoff_seconds(self, attempt: int) -> float:
        return self.base_delay_ms * (2**attempt) / 1000
