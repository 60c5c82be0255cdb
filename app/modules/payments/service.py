"""Payments business logic layer."""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

from fastapi import Depends, Request
from pydantic import ValidationError

from app.core.config import Settings, get_settings
from app.core.database import utc_now
from app.core.enums import ReconcileOutcomeEnum, RoleEnum, TransactionStatusEnum
from app.core.metrics import record_reconcile_outcome
from app.modules.identity.models import User
from app.modules.payments.gateway import PaymentGateway, get_payment_gateway
from app.modules.payments.models import Enrollment, Transaction
from app.modules.payments.reconciler import ReconcileOutcome, ReconcileResult, Reconciler
from app.modules.payments.retry import ReconcileRetryDriver
from app.modules.payments.schemas import (
    CheckoutConfirm,
    CheckoutCreate,
    EnrollmentRead,
    PayerRead,
    PaymentOutcomeEvent,
    PaymentStatsRead,
    RefundCreate,
    TransactionDetailRead,
    TransactionRead,
    WebhookAck,
)
from app.modules.payments.store import LedgerStore
from app.modules.payments.webhooks import event_from_webhook, verify_webhook_signature
from app.shared.exceptions import (
    BusinessRuleException,
    ConflictException,
    NotFoundException,
    PaymentGatewayException,
    ServiceUnavailableException,
    UnauthorizedException,
)

logger = logging.getLogger(__name__)

CHANNEL_CHECKOUT_CONFIRM = "checkout_confirm"
CHANNEL_WEBHOOK = "webhook"
CHANNEL_ADMIN_SYNC = "admin_sync"


class PaymentsService:
    """Payments domain service.

    Ledger reads and writes go through ``LedgerStore`` units; gateway calls
    never run inside an open unit.
    """

    def __init__(
        self,
        store: LedgerStore,
        driver: ReconcileRetryDriver,
        gateway: PaymentGateway,
        *,
        confirmation_delay_ms: int = 0,
        webhook_secret: str | None = None,
        webhook_tolerance_seconds: int = 300,
        sleep=asyncio.sleep,
        now_provider=utc_now,
    ) -> None:
        self.store = store
        self.driver = driver
        self.gateway = gateway
        self.confirmation_delay_ms = confirmation_delay_ms
        self.webhook_secret = webhook_secret
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self.sleep = sleep
        self.now_provider = now_provider

    async def start_checkout(self, payload: CheckoutCreate, actor: User) -> tuple[Transaction, str | None]:
        """Open a gateway checkout and record a pending transaction."""
        async with self.store.atomic(read_only=True) as unit:
            course = await unit.ledger.get_course(payload.course_id)
            if course is None or not course.is_published:
                raise NotFoundException("Course not found")
            if course.price_minor_units <= 0:
                raise BusinessRuleException("Course is not available for purchase")
            if await unit.ledger.find_enrollment(actor.id, course.id) is not None:
                raise ConflictException("You are already enrolled in this course")
            title = course.title
            amount = course.price_minor_units
            currency = course.currency

        checkout = await self.gateway.create_checkout(
            payer_id=actor.id,
            course_id=payload.course_id,
            title=title,
            amount_minor_units=amount,
            currency=currency,
        )

        async with self.store.atomic() as unit:
            transaction = await unit.ledger.create_transaction(
                payer_id=actor.id,
                course_id=payload.course_id,
                purchase_reference=checkout.purchase_reference,
                amount_minor_units=amount,
                currency=currency,
                item_description=f"{title} ({payload.course_id})",
                status=TransactionStatusEnum.PENDING,
            )
            await unit.audit.create_audit_log(
                actor_id=actor.id,
                action="payments.checkout.start",
                entity_type="transaction",
                entity_id=str(transaction.id),
                payload={
                    "purchase_reference": transaction.purchase_reference,
                    "course_id": payload.course_id,
                    "amount_minor_units": amount,
                },
            )
            await unit.audit.create_outbox_event(
                aggregate_type="payments",
                aggregate_id=str(transaction.id),
                event_type="payments.checkout.started",
                payload={
                    "transaction_id": str(transaction.id),
                    "payer_id": actor.id,
                    "course_id": payload.course_id,
                },
            )
        logger.info("Checkout %s started by payer %s", checkout.purchase_reference, actor.id)
        return transaction, checkout.checkout_url

    async def confirm_checkout(self, payload: CheckoutConfirm, actor: User) -> ReconcileResult:
        """Reconcile a checkout the learner returned from."""
        status = await self.gateway.retrieve_payment_status(payload.purchase_reference)
        if status.payer_id and status.payer_id != actor.id:
            raise UnauthorizedException("Payment belongs to another user")
        if status.outcome is None:
            raise BusinessRuleException("Payment not completed")

        try:
            event = status.to_event(payer_id=actor.id)
        except ValidationError as exc:
            raise BusinessRuleException("Payment details are incomplete") from exc

        if self.confirmation_delay_ms > 0:
            # Gives the webhook a head start on the same reference.
            await self.sleep(self.confirmation_delay_ms / 1000)

        outcome = await self.driver.with_retry(event)
        record_reconcile_outcome(CHANNEL_CHECKOUT_CONFIRM, str(outcome.kind))
        return outcome.unwrap()

    async def handle_webhook(self, body: bytes, signature_header: str | None) -> WebhookAck:
        """Authenticate, translate and reconcile one gateway webhook."""
        payload = verify_webhook_signature(
            body,
            signature_header,
            self.webhook_secret,
            self.webhook_tolerance_seconds,
        )
        event_type = payload.get("type")

        try:
            event = event_from_webhook(payload)
        except ValidationError:
            logger.error("Webhook %s %s carries an invalid payment object", payload.get("id"), event_type)
            record_reconcile_outcome(CHANNEL_WEBHOOK, str(ReconcileOutcomeEnum.MALFORMED))
            return WebhookAck(event_type=event_type, outcome=str(ReconcileOutcomeEnum.MALFORMED))

        if event is None:
            logger.debug("Webhook %s ignored", event_type)
            return WebhookAck(event_type=event_type)

        outcome = await self.driver.with_retry(event)
        record_reconcile_outcome(CHANNEL_WEBHOOK, str(outcome.kind))
        self._log_webhook_outcome(event, outcome)
        if outcome.is_transient:
            raise ServiceUnavailableException("Payment could not be reconciled yet")
        return WebhookAck(event_type=event_type, outcome=str(outcome.kind))

    async def get_payment_status(
        self,
        purchase_reference: str,
        actor: User,
    ) -> tuple[Transaction | None, Enrollment | None]:
        """Ledger view of one reference for its owner or an admin."""
        async with self.store.atomic(read_only=True) as unit:
            transaction = await unit.ledger.find_transaction_by_reference(purchase_reference)
            if transaction is None:
                return None, None
            if actor.role != RoleEnum.ADMIN and transaction.payer_id != actor.id:
                raise UnauthorizedException("Access denied")

            enrollment = None
            if transaction.course_id is not None:
                enrollment = await unit.ledger.find_enrollment(transaction.payer_id, transaction.course_id)
            return transaction, enrollment

    async def list_transactions(
        self,
        status: TransactionStatusEnum | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Transaction], int]:
        async with self.store.atomic(read_only=True) as unit:
            return await unit.ledger.list_transactions(status, limit, offset)

    async def list_payment_history(
        self,
        actor: User,
        limit: int,
        offset: int,
    ) -> tuple[list[Transaction], int]:
        """The caller's own transactions, newest first."""
        async with self.store.atomic(read_only=True) as unit:
            return await unit.ledger.list_transactions(None, limit, offset, payer_id=actor.id)

    async def get_transaction_detail(self, transaction_id: UUID) -> TransactionDetailRead:
        """Ledger row plus payer, enrollment and the gateway's current outcome."""
        async with self.store.atomic(read_only=True) as unit:
            transaction = await unit.ledger.get_transaction_by_id(transaction_id)
            if transaction is None:
                raise NotFoundException("Transaction not found")
            payer = await unit.ledger.get_payer(transaction.payer_id)
            enrollment = None
            if transaction.course_id is not None:
                enrollment = await unit.ledger.find_enrollment(transaction.payer_id, transaction.course_id)

        gateway_outcome = None
        gateway_reachable = True
        try:
            status = await self.gateway.retrieve_payment_status(transaction.purchase_reference)
            gateway_outcome = status.outcome
        except PaymentGatewayException as exc:
            # Detail stays available when the gateway is down or unconfigured.
            logger.warning("Gateway status for %s unavailable: %s", transaction.purchase_reference, exc)
            gateway_reachable = False

        return TransactionDetailRead(
            transaction=TransactionRead.model_validate(transaction),
            payer=PayerRead.model_validate(payer) if payer else None,
            enrollment=EnrollmentRead.model_validate(enrollment) if enrollment else None,
            gateway_outcome=gateway_outcome,
            gateway_reachable=gateway_reachable,
        )

    async def get_payment_stats(self) -> PaymentStatsRead:
        """Aggregated ledger snapshot for admins."""
        now = self.now_provider()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        async with self.store.atomic(read_only=True) as unit:
            snapshot = await unit.ledger.get_transaction_stats(month_start)
        return PaymentStatsRead(generated_at=now, **snapshot)

    async def refund_transaction(
        self,
        transaction_id: UUID,
        payload: RefundCreate,
        actor: User,
    ) -> Transaction:
        """Refund a successful payment. The enrollment is kept."""
        async with self.store.atomic(read_only=True) as unit:
            transaction = await unit.ledger.get_transaction_by_id(transaction_id)
            if transaction is None:
                raise NotFoundException("Transaction not found")
            if transaction.status == TransactionStatusEnum.REFUNDED:
                raise ConflictException("Transaction is already refunded")
            if transaction.status != TransactionStatusEnum.SUCCESS:
                raise BusinessRuleException("Only successful transactions can be refunded")
            purchase_reference = transaction.purchase_reference

        refund_id = await self.gateway.refund(purchase_reference, payload.reason)

        async with self.store.atomic() as unit:
            refunded = await unit.ledger.mark_transaction_refunded(transaction_id, self.now_provider())
            if refunded is None:
                logger.error("Transaction %s changed state while refund %s was issued", transaction_id, refund_id)
                raise ConflictException("Transaction changed state during refund")
            await unit.audit.create_audit_log(
                actor_id=actor.id,
                action="payments.transaction.refund",
                entity_type="transaction",
                entity_id=str(refunded.id),
                payload={
                    "purchase_reference": refunded.purchase_reference,
                    "refund_id": refund_id,
                    "reason": payload.reason,
                },
            )
            await unit.audit.create_outbox_event(
                aggregate_type="payments",
                aggregate_id=str(refunded.id),
                event_type="payments.transaction.refunded",
                payload={
                    "transaction_id": str(refunded.id),
                    "payer_id": refunded.payer_id,
                    "refund_id": refund_id,
                },
            )
        logger.info("Transaction %s refunded by %s", transaction_id, actor.id)
        return refunded

    async def sync_transaction(self, transaction_id: UUID) -> ReconcileResult:
        """Re-query the gateway for a transaction and reconcile its outcome."""
        async with self.store.atomic(read_only=True) as unit:
            transaction = await unit.ledger.get_transaction_by_id(transaction_id)
            if transaction is None:
                raise NotFoundException("Transaction not found")
            purchase_reference = transaction.purchase_reference
            payer_id = transaction.payer_id
            course_id = transaction.course_id

        status = await self.gateway.retrieve_payment_status(purchase_reference)
        if status.outcome is None:
            raise BusinessRuleException("Payment is still pending at the gateway")

        try:
            event = status.to_event(payer_id=payer_id, course_id=course_id)
        except ValidationError as exc:
            raise BusinessRuleException("Payment details are incomplete") from exc

        outcome = await self.driver.with_retry(event)
        record_reconcile_outcome(CHANNEL_ADMIN_SYNC, str(outcome.kind))
        return outcome.unwrap()

    @staticmethod
    def _log_webhook_outcome(event: PaymentOutcomeEvent, outcome: ReconcileOutcome) -> None:
        if outcome.is_applied:
            logger.info(
                "Webhook payment %s reconciled (already applied: %s)",
                event.purchase_reference,
                outcome.result.was_already_applied if outcome.result else None,
            )
        elif outcome.is_transient:
            logger.error("Webhook payment %s not reconciled: %s", event.purchase_reference, outcome.message)
        else:
            # Redelivery cannot fix these; acknowledge so the gateway stops retrying.
            logger.error(
                "Webhook payment %s dropped as %s: %s",
                event.purchase_reference,
                outcome.kind,
                outcome.message,
            )


def build_payments_service(
    settings: Settings,
    store: LedgerStore,
    gateway: PaymentGateway,
) -> PaymentsService:
    """Wire reconciler, retry driver and gateway into a service."""
    driver = ReconcileRetryDriver.from_settings(Reconciler(store), settings)
    return PaymentsService(
        store,
        driver,
        gateway,
        confirmation_delay_ms=settings.checkout_confirmation_delay_ms,
        webhook_secret=settings.stripe_webhook_secret,
        webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )


async def get_payments_service(
    request: Request,
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentsService:
    """Dependency to provide payments service."""
    settings = get_settings()
    store = LedgerStore.from_settings(request.app.state.session_factory, settings)
    return build_payments_service(settings, store, gateway)
