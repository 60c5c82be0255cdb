"""Payments schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.core.enums import PaymentOutcomeEnum, TransactionStatusEnum


class PaymentOutcomeEvent(BaseModel):
    """Payment outcome signal for one purchase reference.

    Produced by every channel (webhook, checkout confirmation, admin sync,
    pending sweep). Payer and course identifiers come from checkout metadata
    and may be missing on malformed upstream data.
    """

    model_config = ConfigDict(frozen=True)

    purchase_reference: str = Field(min_length=1)
    payer_id: str | None = None
    course_id: str | None = None
    outcome: PaymentOutcomeEnum
    amount_minor_units: int = Field(default=0, ge=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    item_description: str = ""


class TransactionRead(BaseModel):
    """Transaction response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payer_id: str
    course_id: str | None
    purchase_reference: str
    amount_minor_units: int
    currency: str
    status: TransactionStatusEnum
    item_description: str
    gateway: str
    paid_at: datetime | None
    refunded_at: datetime | None
    created_at: datetime
    updated_at: datetime


class EnrollmentRead(BaseModel):
    """Enrollment response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payer_id: str
    course_id: str
    progress: float
    completed: bool
    enrolled_at: datetime
    completed_at: datetime | None


class ReconcileResultRead(BaseModel):
    """Reconciliation result returned to the invoking channel."""

    model_config = ConfigDict(from_attributes=True)

    transaction: TransactionRead
    enrollment: EnrollmentRead | None
    was_already_applied: bool


class CheckoutCreate(BaseModel):
    """Start checkout request."""

    course_id: str = Field(min_length=1, max_length=64)


class CheckoutSessionRead(BaseModel):
    """Started checkout response."""

    purchase_reference: str
    checkout_url: str | None
    transaction: TransactionRead


class CheckoutConfirm(BaseModel):
    """Confirm checkout request sent by the learner after redirect."""

    purchase_reference: str = Field(min_length=1, max_length=255)


class PaymentStatusRead(BaseModel):
    """Ledger view of one purchase reference."""

    purchase_reference: str
    transaction: TransactionRead | None
    enrollment: EnrollmentRead | None
    is_enrolled: bool


class RefundCreate(BaseModel):
    """Refund request (admin)."""

    reason: str | None = Field(default=None, max_length=500)


class WebhookAck(BaseModel):
    """Webhook acknowledgement."""

    received: bool = True
    event_type: str | None = None
    outcome: str | None = None


class PayerRead(BaseModel):
    """Payer summary for admin views."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str | None


class TransactionDetailRead(BaseModel):
    """Admin view of one transaction with its gateway state."""

    transaction: TransactionRead
    payer: PayerRead | None
    enrollment: EnrollmentRead | None
    gateway_outcome: PaymentOutcomeEnum | None = None
    gateway_reachable: bool


class PaymentStatsRead(BaseModel):
    """Ledger totals; amounts are minor units of the platform currency."""

    generated_at: datetime

    transactions_total: int
    transactions_pending: int
    transactions_success: int
    transactions_failed: int
    transactions_refunded: int
    transactions_this_month: int

    revenue_minor_units: int
    refunded_minor_units: int
    revenue_this_month_minor_units: int
    average_order_minor_units: int
    success_rate: float
