"""Payments ledger ORM models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, BaseModelMixin, enum_values, utc_now
from app.core.enums import TransactionStatusEnum


class Transaction(BaseModelMixin, Base):
    """One purchase attempt identified by the gateway reference."""

    __tablename__ = "transactions"

    payer_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    course_id: Mapped[str | None] = mapped_column(
        ForeignKey("courses.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    purchase_reference: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    status: Mapped[TransactionStatusEnum] = mapped_column(
        SAEnum(
            TransactionStatusEnum,
            name="transaction_status_enum",
            native_enum=False,
            values_callable=enum_values,
        ),
        default=TransactionStatusEnum.PENDING,
        nullable=False,
        index=True,
    )
    item_description: Mapped[str] = mapped_column(String(512), nullable=False)
    gateway: Mapped[str] = mapped_column(String(32), default="stripe", nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sweep_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_sweep_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Enrollment(BaseModelMixin, Base):
    """Access grant of one payer to one course."""

    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("payer_id", "course_id", name="uq_enrollments_payer_id_course_id"),)

    payer_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    progress: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
