"""Payments API router."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request, status

from app.core.enums import RoleEnum, TransactionStatusEnum
from app.modules.identity.service import get_current_user, require_roles
from app.modules.payments.schemas import (
    CheckoutConfirm,
    CheckoutCreate,
    CheckoutSessionRead,
    EnrollmentRead,
    PaymentStatsRead,
    PaymentStatusRead,
    ReconcileResultRead,
    RefundCreate,
    TransactionDetailRead,
    TransactionRead,
    WebhookAck,
)
from app.modules.payments.service import PaymentsService, get_payments_service
from app.shared.pagination import Page, build_page, get_pagination_params

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/checkout", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
async def start_checkout(
    payload: CheckoutCreate,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(get_current_user),
) -> CheckoutSessionRead:
    """Start a course purchase."""
    transaction, checkout_url = await service.start_checkout(payload, current_user)
    return CheckoutSessionRead(
        purchase_reference=transaction.purchase_reference,
        checkout_url=checkout_url,
        transaction=TransactionRead.model_validate(transaction),
    )


@router.post("/checkout/confirm", response_model=ReconcileResultRead)
async def confirm_checkout(
    payload: CheckoutConfirm,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(get_current_user),
) -> ReconcileResultRead:
    """Confirm a completed checkout and enroll the learner."""
    result = await service.confirm_checkout(payload, current_user)
    return ReconcileResultRead.model_validate(result)


@router.get("/checkout/{purchase_reference}", response_model=PaymentStatusRead)
async def get_payment_status(
    purchase_reference: str,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(get_current_user),
) -> PaymentStatusRead:
    """Ledger status of a purchase."""
    transaction, enrollment = await service.get_payment_status(purchase_reference, current_user)
    return PaymentStatusRead(
        purchase_reference=purchase_reference,
        transaction=TransactionRead.model_validate(transaction) if transaction else None,
        enrollment=EnrollmentRead.model_validate(enrollment) if enrollment else None,
        is_enrolled=enrollment is not None,
    )


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    service: PaymentsService = Depends(get_payments_service),
) -> WebhookAck:
    """Receive Stripe payment events."""
    body = await request.body()
    return await service.handle_webhook(body, stripe_signature)


@router.get("/transactions", response_model=Page[TransactionRead])
async def list_transactions(
    status_filter: TransactionStatusEnum | None = None,
    pagination=Depends(get_pagination_params),
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.ADMIN)),
) -> Page[TransactionRead]:
    """List transactions (admin only)."""
    items, total = await service.list_transactions(
        status=status_filter,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    serialized = [TransactionRead.model_validate(item) for item in items]
    return build_page(serialized, total, pagination)


@router.get("/history", response_model=Page[TransactionRead])
async def list_payment_history(
    pagination=Depends(get_pagination_params),
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(get_current_user),
) -> Page[TransactionRead]:
    """The caller's payment history."""
    items, total = await service.list_payment_history(
        current_user,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    serialized = [TransactionRead.model_validate(item) for item in items]
    return build_page(serialized, total, pagination)


@router.get("/transactions/stats", response_model=PaymentStatsRead)
async def get_payment_stats(
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.ADMIN)),
) -> PaymentStatsRead:
    """Payment totals (admin only)."""
    return await service.get_payment_stats()


@router.get("/transactions/{transaction_id}", response_model=TransactionDetailRead)
async def get_transaction_detail(
    transaction_id: UUID,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.ADMIN)),
) -> TransactionDetailRead:
    """One transaction with payer and gateway state (admin only)."""
    return await service.get_transaction_detail(transaction_id)


@router.post("/transactions/{transaction_id}/refund", response_model=TransactionRead)
async def refund_transaction(
    transaction_id: UUID,
    payload: RefundCreate,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.ADMIN)),
) -> TransactionRead:
    """Refund a successful transaction (admin only)."""
    transaction = await service.refund_transaction(transaction_id, payload, current_user)
    return TransactionRead.model_validate(transaction)


@router.post("/transactions/{transaction_id}/sync", response_model=ReconcileResultRead)
async def sync_transaction(
    transaction_id: UUID,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.ADMIN)),
) -> ReconcileResultRead:
    """Re-query the gateway and reconcile a transaction (admin only)."""
    result = await service.sync_transaction(transaction_id)
    return ReconcileResultRead.model_validate(result)
