"""Payments ledger repository layer."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Select, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import utc_now
from app.core.enums import TransactionStatusEnum
from app.modules.catalog.models import Course
from app.modules.identity.models import User
from app.modules.payments.models import Enrollment, Transaction

SETTLED_STATUSES = (TransactionStatusEnum.SUCCESS, TransactionStatusEnum.REFUNDED)


class LedgerRepository:
    """DB access methods for transactions and enrollments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def payer_exists(self, payer_id: str) -> bool:
        stmt = select(User.id).where(User.id == payer_id)
        return (await self.session.scalar(stmt)) is not None

    async def get_payer(self, payer_id: str) -> User | None:
        return await self.session.get(User, payer_id)

    async def get_course(self, course_id: str) -> Course | None:
        stmt = select(Course).where(Course.id == course_id)
        return await self.session.scalar(stmt)

    async def find_transaction_by_reference(self, purchase_reference: str) -> Transaction | None:
        stmt = (
            select(Transaction)
            .where(Transaction.purchase_reference == purchase_reference)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def get_transaction_by_id(self, transaction_id: UUID) -> Transaction | None:
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        return await self.session.scalar(stmt)

    async def create_transaction(
        self,
        *,
        payer_id: str,
        course_id: str | None,
        purchase_reference: str,
        amount_minor_units: int,
        currency: str,
        item_description: str,
        status: TransactionStatusEnum,
        paid_at: datetime | None = None,
    ) -> Transaction:
        """Insert a transaction; raises IntegrityError if the reference exists."""
        transaction = Transaction(
            payer_id=payer_id,
            course_id=course_id,
            purchase_reference=purchase_reference,
            amount_minor_units=amount_minor_units,
            currency=currency.upper(),
            item_description=item_description,
            status=status,
            paid_at=paid_at,
        )
        async with self.session.begin_nested():
            self.session.add(transaction)
            await self.session.flush()
        return transaction

    async def update_transaction_status_if_not_success(
        self,
        transaction_id: UUID,
        status: TransactionStatusEnum,
        paid_at: datetime | None,
    ) -> Transaction | None:
        """Write status unless the row is already settled.

        Returns None when a concurrent writer settled the row first.
        """
        stmt = (
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status.not_in(SETTLED_STATUSES),
            )
            .values(status=status, paid_at=paid_at, updated_at=utc_now())
            .returning(Transaction)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def mark_transaction_refunded(
        self,
        transaction_id: UUID,
        refunded_at: datetime,
    ) -> Transaction | None:
        """Move a SUCCESS transaction to REFUNDED; None if it was not SUCCESS."""
        stmt = (
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatusEnum.SUCCESS,
            )
            .values(
                status=TransactionStatusEnum.REFUNDED,
                refunded_at=refunded_at,
                updated_at=utc_now(),
            )
            .returning(Transaction)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def find_enrollment(self, payer_id: str, course_id: str) -> Enrollment | None:
        stmt = (
            select(Enrollment)
            .where(Enrollment.payer_id == payer_id, Enrollment.course_id == course_id)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def create_enrollment(
        self,
        payer_id: str,
        course_id: str,
        enrolled_at: datetime,
    ) -> Enrollment:
        """Insert an enrollment; raises IntegrityError if (payer, course) exists."""
        enrollment = Enrollment(
            payer_id=payer_id,
            course_id=course_id,
            progress=0.0,
            completed=False,
            enrolled_at=enrolled_at,
        )
        async with self.session.begin_nested():
            self.session.add(enrollment)
            await self.session.flush()
        return enrollment

    async def list_stale_pending_transactions(
        self,
        created_before: datetime,
        now: datetime,
        limit: int,
    ) -> list[Transaction]:
        """PENDING rows due for a sweep; never-swept rows first."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.status == TransactionStatusEnum.PENDING,
                Transaction.created_at <= created_before,
                or_(Transaction.next_sweep_at.is_(None), Transaction.next_sweep_at <= now),
            )
            .order_by(Transaction.next_sweep_at.asc().nulls_first(), Transaction.created_at.asc())
            .limit(limit)
        )
        return (await self.session.scalars(stmt)).all()

    async def defer_pending_sweep(
        self,
        transaction_id: UUID,
        next_sweep_at: datetime,
    ) -> Transaction | None:
        """Push a still-PENDING row back in the sweep queue."""
        stmt = (
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatusEnum.PENDING,
            )
            .values(
                sweep_attempts=Transaction.sweep_attempts + 1,
                next_sweep_at=next_sweep_at,
                updated_at=utc_now(),
            )
            .returning(Transaction)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def list_transactions(
        self,
        status: TransactionStatusEnum | None,
        limit: int,
        offset: int,
        payer_id: str | None = None,
    ) -> tuple[list[Transaction], int]:
        base_stmt: Select[tuple[Transaction]] = select(Transaction)
        if status is not None:
            base_stmt = base_stmt.where(Transaction.status == status)
        if payer_id is not None:
            base_stmt = base_stmt.where(Transaction.payer_id == payer_id)

        count_stmt = select(func.count()).select_from(base_stmt.subquery())
        total = int((await self.session.scalar(count_stmt)) or 0)

        stmt = base_stmt.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
        items = (await self.session.scalars(stmt)).all()
        return items, total

    async def get_transaction_stats(self, month_start: datetime) -> dict[str, int | float]:
        status_counts = await self._count_transactions_by_status()
        revenue, average_order, revenue_this_month = await self._summarize_revenue(month_start)
        refunded_amount = await self._sum_amount_by_status(TransactionStatusEnum.REFUNDED)
        transactions_this_month = await self._count_transactions_since(month_start)

        transactions_pending = status_counts.get(TransactionStatusEnum.PENDING, 0)
        transactions_success = status_counts.get(TransactionStatusEnum.SUCCESS, 0)
        transactions_failed = status_counts.get(TransactionStatusEnum.FAILED, 0)
        transactions_refunded = status_counts.get(TransactionStatusEnum.REFUNDED, 0)
        transactions_total = (
            transactions_pending + transactions_success + transactions_failed + transactions_refunded
        )

        return {
            "transactions_total": transactions_total,
            "transactions_pending": transactions_pending,
            "transactions_success": transactions_success,
            "transactions_failed": transactions_failed,
            "transactions_refunded": transactions_refunded,
            "transactions_this_month": transactions_this_month,
            "revenue_minor_units": revenue,
            "refunded_minor_units": refunded_amount,
            "revenue_this_month_minor_units": revenue_this_month,
            "average_order_minor_units": average_order,
            "success_rate": (
                round(transactions_success / transactions_total * 100, 2) if transactions_total else 0.0
            ),
        }

    async def _count_transactions_by_status(self) -> dict[TransactionStatusEnum, int]:
        stmt = select(Transaction.status, func.count(Transaction.id)).group_by(Transaction.status)
        rows = (await self.session.execute(stmt)).all()
        return {status: int(count) for status, count in rows}

    async def _count_transactions_since(self, since: datetime) -> int:
        stmt = select(func.count(Transaction.id)).where(Transaction.created_at >= since)
        return int((await self.session.scalar(stmt)) or 0)

    async def _sum_amount_by_status(self, status: TransactionStatusEnum) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_minor_units), 0)).where(
            Transaction.status == status,
        )
        return int((await self.session.scalar(stmt)) or 0)

    async def _summarize_revenue(self, month_start: datetime) -> tuple[int, int, int]:
        this_month = case((Transaction.created_at >= month_start, Transaction.amount_minor_units), else_=0)
        stmt = select(
            func.coalesce(func.sum(Transaction.amount_minor_units), 0),
            func.coalesce(func.avg(Transaction.amount_minor_units), 0),
            func.coalesce(func.sum(this_month), 0),
        ).where(Transaction.status == TransactionStatusEnum.SUCCESS)
        total, average, month_total = (await self.session.execute(stmt)).one()
        return int(total), round(float(average)), int(month_total)
