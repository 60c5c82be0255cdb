"""Payment-to-enrollment reconciliation.

A payment outcome for one purchase reference may arrive any number of times,
concurrently, from the webhook, the learner's confirmation call, an admin sync
or the pending sweep. ``Reconciler.reconcile`` applies it in a single atomic
unit so that the transaction settles at most once and the (payer, course)
enrollment is created at most once. Concurrent writers are resolved by the
unique constraints on ``transactions.purchase_reference`` and
``enrollments (payer_id, course_id)`` plus a conditional status UPDATE; there
is no in-process locking.

Storage exceptions never leave this module: they are mapped onto
``ReconcileOutcome`` kinds that callers branch on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.database import utc_now
from app.core.enums import PaymentOutcomeEnum, ReconcileOutcomeEnum, TransactionStatusEnum
from app.modules.payments.errors import StorageErrorKind, classify_storage_error, is_unique_violation
from app.modules.payments.models import Enrollment, Transaction
from app.modules.payments.repository import SETTLED_STATUSES
from app.modules.payments.schemas import PaymentOutcomeEvent
from app.modules.payments.store import LedgerStore, LedgerUnit
from app.shared.exceptions import (
    BusinessRuleException,
    NotFoundException,
    ServiceUnavailableException,
    StorageFailureException,
)

logger = logging.getLogger(__name__)

OUTCOME_TO_STATUS: dict[PaymentOutcomeEnum, TransactionStatusEnum] = {
    PaymentOutcomeEnum.SUCCEEDED: TransactionStatusEnum.SUCCESS,
    PaymentOutcomeEnum.FAILED: TransactionStatusEnum.FAILED,
    PaymentOutcomeEnum.CANCELED: TransactionStatusEnum.FAILED,
}


@dataclass(slots=True)
class ReconcileResult:
    transaction: Transaction
    enrollment: Enrollment | None
    was_already_applied: bool


@dataclass(slots=True, frozen=True)
class ReconcileOutcome:
    """Tagged result of one reconciliation call."""

    kind: ReconcileOutcomeEnum
    result: ReconcileResult | None = None
    message: str | None = None

    @classmethod
    def applied(cls, result: ReconcileResult) -> ReconcileOutcome:
        return cls(kind=ReconcileOutcomeEnum.APPLIED, result=result)

    @classmethod
    def failure(cls, kind: ReconcileOutcomeEnum, message: str) -> ReconcileOutcome:
        return cls(kind=kind, message=message)

    @property
    def is_applied(self) -> bool:
        return self.kind == ReconcileOutcomeEnum.APPLIED

    @property
    def is_transient(self) -> bool:
        return self.kind in (ReconcileOutcomeEnum.CONFLICT, ReconcileOutcomeEnum.RETRY_EXHAUSTED)

    def unwrap(self) -> ReconcileResult:
        """Return the result or raise the matching application exception."""
        if self.kind == ReconcileOutcomeEnum.APPLIED and self.result is not None:
            return self.result
        message = self.message or "Payment could not be reconciled"
        if self.kind == ReconcileOutcomeEnum.MALFORMED:
            raise BusinessRuleException(message)
        if self.kind == ReconcileOutcomeEnum.NOT_FOUND:
            raise NotFoundException(message)
        if self.kind == ReconcileOutcomeEnum.STORAGE_ERROR:
            raise StorageFailureException(message)
        raise ServiceUnavailableException(
            "Your payment is still being processed. Please retry in a moment or contact support.",
        )


class Reconciler:
    """Apply payment outcome events to the ledger."""

    def __init__(self, store: LedgerStore, *, now_provider=utc_now) -> None:
        self.store = store
        self.now_provider = now_provider

    async def reconcile(self, event: PaymentOutcomeEvent) -> ReconcileOutcome:
        missing = self._missing_identifiers(event)
        if missing:
            logger.error(
                "Malformed payment event for %s: missing %s",
                event.purchase_reference,
                ", ".join(missing),
            )
            return ReconcileOutcome.failure(
                ReconcileOutcomeEnum.MALFORMED,
                f"Payment event {event.purchase_reference} is missing {', '.join(missing)}",
            )

        try:
            async with self.store.atomic() as unit:
                return await self._apply(unit, event)
        except (SQLAlchemyError, TimeoutError) as exc:
            return self._classify_failure(event, exc)

    async def check_applied(self, event: PaymentOutcomeEvent) -> ReconcileResult | None:
        """Read-only check whether the event's effect is already in the ledger."""
        if self._missing_identifiers(event):
            return None
        try:
            async with self.store.atomic(read_only=True) as unit:
                transaction = await unit.ledger.find_transaction_by_reference(event.purchase_reference)
                if transaction is None or transaction.payer_id != event.payer_id:
                    return None
                if transaction.course_id is not None and transaction.course_id != event.course_id:
                    return None

                if event.outcome != PaymentOutcomeEnum.SUCCEEDED:
                    if transaction.status == TransactionStatusEnum.PENDING:
                        return None
                    return ReconcileResult(transaction, None, was_already_applied=True)

                if transaction.status not in SETTLED_STATUSES:
                    return None
                enrollment = await unit.ledger.find_enrollment(event.payer_id, event.course_id)
                if enrollment is None and transaction.status == TransactionStatusEnum.SUCCESS:
                    return None
                return ReconcileResult(transaction, enrollment, was_already_applied=True)
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.warning(
                "Applied-state check for %s failed: %s",
                event.purchase_reference,
                exc.__class__.__name__,
            )
            return None

    async def _apply(self, unit: LedgerUnit, event: PaymentOutcomeEvent) -> ReconcileOutcome:
        ledger = unit.ledger
        if not await ledger.payer_exists(event.payer_id):
            logger.error("Payer %s not found for payment %s", event.payer_id, event.purchase_reference)
            return ReconcileOutcome.failure(
                ReconcileOutcomeEnum.NOT_FOUND,
                f"Payer {event.payer_id} not found",
            )
        if await ledger.get_course(event.course_id) is None:
            logger.error("Course %s not found for payment %s", event.course_id, event.purchase_reference)
            return ReconcileOutcome.failure(
                ReconcileOutcomeEnum.NOT_FOUND,
                f"Course {event.course_id} not found",
            )

        now = self.now_provider()
        target_status = OUTCOME_TO_STATUS[event.outcome]
        paid_at = now if target_status == TransactionStatusEnum.SUCCESS else None
        status_written = False

        transaction = await ledger.find_transaction_by_reference(event.purchase_reference)
        if transaction is None:
            try:
                transaction = await ledger.create_transaction(
                    payer_id=event.payer_id,
                    course_id=event.course_id,
                    purchase_reference=event.purchase_reference,
                    amount_minor_units=event.amount_minor_units,
                    currency=event.currency,
                    item_description=event.item_description,
                    status=target_status,
                    paid_at=paid_at,
                )
                status_written = True
            except IntegrityError as exc:
                if not is_unique_violation(exc):
                    raise
                transaction = await ledger.find_transaction_by_reference(event.purchase_reference)
                if transaction is None:
                    raise
                logger.info("Transaction %s was created concurrently", event.purchase_reference)

        if transaction.payer_id != event.payer_id:
            logger.error(
                "Payment %s belongs to payer %s, event names payer %s",
                event.purchase_reference,
                transaction.payer_id,
                event.payer_id,
            )
            return ReconcileOutcome.failure(
                ReconcileOutcomeEnum.MALFORMED,
                f"Payment event {event.purchase_reference} does not match the transaction payer",
            )
        if transaction.course_id is not None and transaction.course_id != event.course_id:
            logger.error(
                "Payment %s is for course %s, event names course %s",
                event.purchase_reference,
                transaction.course_id,
                event.course_id,
            )
            return ReconcileOutcome.failure(
                ReconcileOutcomeEnum.MALFORMED,
                f"Payment event {event.purchase_reference} does not match the transaction course",
            )

        if not status_written and transaction.status not in SETTLED_STATUSES:
            if transaction.status != target_status:
                updated = await ledger.update_transaction_status_if_not_success(
                    transaction.id,
                    target_status,
                    paid_at,
                )
                if updated is None:
                    transaction = await ledger.find_transaction_by_reference(event.purchase_reference)
                else:
                    transaction = updated
                    status_written = True

        if status_written:
            await self._record_status_change(unit, transaction, event)

        enrollment: Enrollment | None = None
        enrollment_created = False
        if event.outcome == PaymentOutcomeEnum.SUCCEEDED:
            if transaction.status == TransactionStatusEnum.SUCCESS:
                enrollment, enrollment_created = await self._ensure_enrollment(unit, event, now)
            else:
                enrollment = await ledger.find_enrollment(event.payer_id, event.course_id)

        return ReconcileOutcome.applied(
            ReconcileResult(
                transaction=transaction,
                enrollment=enrollment,
                was_already_applied=not (status_written or enrollment_created),
            ),
        )

    async def _ensure_enrollment(
        self,
        unit: LedgerUnit,
        event: PaymentOutcomeEvent,
        now: datetime,
    ) -> tuple[Enrollment, bool]:
        ledger = unit.ledger
        enrollment = await ledger.find_enrollment(event.payer_id, event.course_id)
        if enrollment is not None:
            return enrollment, False

        try:
            enrollment = await ledger.create_enrollment(event.payer_id, event.course_id, now)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
            existing = await ledger.find_enrollment(event.payer_id, event.course_id)
            if existing is None:
                raise
            logger.info(
                "Enrollment for payer %s in course %s was created concurrently",
                event.payer_id,
                event.course_id,
            )
            return existing, False

        logger.info(
            "Payer %s enrolled in course %s via payment %s",
            event.payer_id,
            event.course_id,
            event.purchase_reference,
        )
        await unit.audit.create_audit_log(
            actor_id=None,
            action="payments.enrollment.create",
            entity_type="enrollment",
            entity_id=str(enrollment.id),
            payload={
                "payer_id": event.payer_id,
                "course_id": event.course_id,
                "purchase_reference": event.purchase_reference,
            },
        )
        await unit.audit.create_outbox_event(
            aggregate_type="payments",
            aggregate_id=str(enrollment.id),
            event_type="payments.enrollment.created",
            payload={
                "enrollment_id": str(enrollment.id),
                "payer_id": event.payer_id,
                "course_id": event.course_id,
            },
        )
        return enrollment, True

    async def _record_status_change(
        self,
        unit: LedgerUnit,
        transaction: Transaction,
        event: PaymentOutcomeEvent,
    ) -> None:
        await unit.audit.create_audit_log(
            actor_id=None,
            action="payments.transaction.status.update",
            entity_type="transaction",
            entity_id=str(transaction.id),
            payload={
                "purchase_reference": transaction.purchase_reference,
                "outcome": str(event.outcome),
                "to_status": str(transaction.status),
            },
        )
        await unit.audit.create_outbox_event(
            aggregate_type="payments",
            aggregate_id=str(transaction.id),
            event_type="payments.transaction.status.updated",
            payload={
                "transaction_id": str(transaction.id),
                "payer_id": transaction.payer_id,
                "to_status": str(transaction.status),
            },
        )

    def _classify_failure(self, event: PaymentOutcomeEvent, exc: BaseException) -> ReconcileOutcome:
        kind = classify_storage_error(exc)
        reference = event.purchase_reference
        if kind in (StorageErrorKind.CONFLICT, StorageErrorKind.UNIQUE_VIOLATION):
            logger.warning("Ledger conflict while reconciling %s: %s", reference, exc.__class__.__name__)
            return ReconcileOutcome.failure(
                ReconcileOutcomeEnum.CONFLICT,
                f"Concurrent ledger write while reconciling {reference}",
            )
        if kind == StorageErrorKind.MISSING_REFERENCE:
            logger.error("Payer or course vanished while reconciling %s", reference)
            return ReconcileOutcome.failure(
                ReconcileOutcomeEnum.NOT_FOUND,
                f"Payer {event.payer_id} or course {event.course_id} not found",
            )
        logger.error("Ledger rejected reconciliation of %s", reference, exc_info=exc)
        return ReconcileOutcome.failure(
            ReconcileOutcomeEnum.STORAGE_ERROR,
            f"Ledger rejected reconciliation of {reference}",
        )

    @staticmethod
    def _missing_identifiers(event: PaymentOutcomeEvent) -> list[str]:
        missing: list[str] = []
        if not event.payer_id:
            missing.append("payer_id")
        if not event.course_id:
            missing.append("course_id")
        return missing
