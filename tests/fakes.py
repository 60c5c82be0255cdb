"""In-memory doubles for the payments ledger used across tests."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import SimpleNamespace
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.enums import PaymentOutcomeEnum, RoleEnum, TransactionStatusEnum
from app.modules.payments.repository import SETTLED_STATUSES
from app.modules.payments.schemas import PaymentOutcomeEvent
from app.modules.payments.store import LedgerUnit

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


class FakeDriverError(Exception):
    """Stand-in for an asyncpg error carrying a SQLSTATE."""

    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def unique_violation(statement: str = "INSERT") -> IntegrityError:
    return IntegrityError(statement, {}, FakeDriverError("duplicate key value", "23505"))


def serialization_failure(statement: str = "UPDATE") -> OperationalError:
    return OperationalError(statement, {}, FakeDriverError("could not serialize access", "40001"))


def lock_not_available(statement: str = "UPDATE") -> OperationalError:
    return OperationalError(statement, {}, FakeDriverError("canceling statement due to lock timeout", "55P03"))


@dataclass
class FakeTransaction:
    payer_id: str
    course_id: str | None
    purchase_reference: str
    amount_minor_units: int
    currency: str
    status: TransactionStatusEnum
    item_description: str
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    gateway: str = "stripe"
    sweep_attempts: int = 0
    next_sweep_at: datetime | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = FIXED_NOW
    updated_at: datetime = FIXED_NOW


@dataclass
class FakeEnrollment:
    payer_id: str
    course_id: str
    enrolled_at: datetime
    progress: float = 0.0
    completed: bool = False
    completed_at: datetime | None = None
    id: UUID = field(default_factory=uuid4)


@dataclass
class PendingWrites:
    transactions: dict[str, FakeTransaction] = field(default_factory=dict)
    enrollments: dict[tuple[str, str], FakeEnrollment] = field(default_factory=dict)
    audit_logs: list[dict] = field(default_factory=list)
    outbox_events: list[dict] = field(default_factory=list)


class FakeLedgerDatabase:
    """In-memory ledger with unique keys and all-or-nothing units."""

    def __init__(self) -> None:
        self.users: dict[str, SimpleNamespace] = {}
        self.courses: dict[str, SimpleNamespace] = {}
        self.transactions: dict[str, FakeTransaction] = {}
        self.enrollments: dict[tuple[str, str], FakeEnrollment] = {}
        self.audit_logs: list[dict] = []
        self.outbox_events: list[dict] = []
        self.in_flight: list[PendingWrites] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.units_opened = 0
        self.read_only_units_opened = 0

    def add_user(self, user_id: str, role: RoleEnum = RoleEnum.STUDENT) -> SimpleNamespace:
        user = SimpleNamespace(id=user_id, email=f"{user_id}@learn.test", name=None, role=role, is_active=True)
        self.users[user_id] = user
        return user

    def add_course(
        self,
        course_id: str,
        *,
        title: str = "Intro to Python",
        price_minor_units: int = 4900,
        is_published: bool = True,
    ) -> SimpleNamespace:
        course = SimpleNamespace(
            id=course_id,
            title=title,
            price_minor_units=price_minor_units,
            currency="USD",
            is_published=is_published,
        )
        self.courses[course_id] = course
        return course

    def add_transaction(self, **kwargs) -> FakeTransaction:
        values = {
            "payer_id": "user-1",
            "course_id": "course-1",
            "purchase_reference": "ref-1",
            "amount_minor_units": 4900,
            "currency": "USD",
            "status": TransactionStatusEnum.PENDING,
            "item_description": "Intro to Python (course-1)",
        }
        values.update(kwargs)
        transaction = FakeTransaction(**values)
        self.transactions[transaction.purchase_reference] = transaction
        return transaction

    def add_enrollment(self, payer_id: str, course_id: str) -> FakeEnrollment:
        enrollment = FakeEnrollment(payer_id=payer_id, course_id=course_id, enrolled_at=FIXED_NOW)
        self.enrollments[(payer_id, course_id)] = enrollment
        return enrollment

    def fail_next(self, operation: str, exc: BaseException, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([exc] * times)

    def maybe_fail(self, operation: str) -> None:
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def commit(self, writes: PendingWrites) -> None:
        self.transactions.update(writes.transactions)
        self.enrollments.update(writes.enrollments)
        self.audit_logs.extend(writes.audit_logs)
        self.outbox_events.extend(writes.outbox_events)

    def other_in_flight(self, writes: PendingWrites) -> list[PendingWrites]:
        return [item for item in self.in_flight if item is not writes]


class FakeLedgerRepository:
    """Mirror of LedgerRepository over FakeLedgerDatabase."""

    def __init__(self, db: FakeLedgerDatabase, writes: PendingWrites) -> None:
        self.db = db
        self.writes = writes

    def _current_transaction(self, purchase_reference: str) -> FakeTransaction | None:
        return self.writes.transactions.get(purchase_reference) or self.db.transactions.get(purchase_reference)

    def _lock_row(self, purchase_reference: str) -> None:
        # Another open unit holds the row: the lock wait times out.
        if any(purchase_reference in other.transactions for other in self.db.other_in_flight(self.writes)):
            raise lock_not_available("UPDATE transactions")

    async def payer_exists(self, payer_id: str) -> bool:
        self.db.maybe_fail("payer_exists")
        return payer_id in self.db.users

    async def get_course(self, course_id: str) -> SimpleNamespace | None:
        return self.db.courses.get(course_id)

    async def find_transaction_by_reference(self, purchase_reference: str) -> FakeTransaction | None:
        await asyncio.sleep(0)
        self.db.maybe_fail("find_transaction_by_reference")
        return self._current_transaction(purchase_reference)

    async def get_transaction_by_id(self, transaction_id: UUID) -> FakeTransaction | None:
        for transaction in [*self.writes.transactions.values(), *self.db.transactions.values()]:
            if transaction.id == transaction_id:
                return self._current_transaction(transaction.purchase_reference)
        return None

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
    ) -> FakeTransaction:
        await asyncio.sleep(0)
        self.db.maybe_fail("create_transaction")
        taken = purchase_reference in self.db.transactions or any(
            purchase_reference in other.transactions for other in self.db.in_flight
        )
        if taken:
            raise unique_violation("INSERT INTO transactions")
        transaction = FakeTransaction(
            payer_id=payer_id,
            course_id=course_id,
            purchase_reference=purchase_reference,
            amount_minor_units=amount_minor_units,
            currency=currency.upper(),
            status=status,
            item_description=item_description,
            paid_at=paid_at,
        )
        self.writes.transactions[purchase_reference] = transaction
        return transaction

    async def update_transaction_status_if_not_success(
        self,
        transaction_id: UUID,
        status: TransactionStatusEnum,
        paid_at: datetime | None,
    ) -> FakeTransaction | None:
        await asyncio.sleep(0)
        self.db.maybe_fail("update_transaction_status_if_not_success")
        current = await self.get_transaction_by_id(transaction_id)
        if current is None:
            return None
        self._lock_row(current.purchase_reference)
        if current.status in SETTLED_STATUSES:
            return None
        updated = replace(current, status=status, paid_at=paid_at)
        self.writes.transactions[current.purchase_reference] = updated
        return updated

    async def mark_transaction_refunded(
        self,
        transaction_id: UUID,
        refunded_at: datetime,
    ) -> FakeTransaction | None:
        current = await self.get_transaction_by_id(transaction_id)
        if current is None:
            return None
        self._lock_row(current.purchase_reference)
        if current.status != TransactionStatusEnum.SUCCESS:
            return None
        updated = replace(current, status=TransactionStatusEnum.REFUNDED, refunded_at=refunded_at)
        self.writes.transactions[current.purchase_reference] = updated
        return updated

    async def find_enrollment(self, payer_id: str, course_id: str) -> FakeEnrollment | None:
        await asyncio.sleep(0)
        key = (payer_id, course_id)
        return self.writes.enrollments.get(key) or self.db.enrollments.get(key)

    async def create_enrollment(
        self,
        payer_id: str,
        course_id: str,
        enrolled_at: datetime,
    ) -> FakeEnrollment:
        await asyncio.sleep(0)
        self.db.maybe_fail("create_enrollment")
        key = (payer_id, course_id)
        taken = key in self.db.enrollments or any(key in other.enrollments for other in self.db.in_flight)
        if taken:
            raise unique_violation("INSERT INTO enrollments")
        enrollment = FakeEnrollment(payer_id=payer_id, course_id=course_id, enrolled_at=enrolled_at)
        self.writes.enrollments[key] = enrollment
        return enrollment

    async def list_stale_pending_transactions(
        self,
        created_before: datetime,
        now: datetime,
        limit: int,
    ) -> list[FakeTransaction]:
        due = [
            item
            for item in self.db.transactions.values()
            if item.status == TransactionStatusEnum.PENDING
            and item.created_at <= created_before
            and (item.next_sweep_at is None or item.next_sweep_at <= now)
        ]
        due.sort(key=lambda item: (item.next_sweep_at is not None, item.next_sweep_at or now, item.created_at))
        return due[:limit]

    async def defer_pending_sweep(self, transaction_id: UUID, next_sweep_at: datetime) -> FakeTransaction | None:
        current = await self.get_transaction_by_id(transaction_id)
        if current is None or current.status != TransactionStatusEnum.PENDING:
            return None
        updated = replace(current, sweep_attempts=current.sweep_attempts + 1, next_sweep_at=next_sweep_at)
        self.writes.transactions[current.purchase_reference] = updated
        return updated

    async def list_transactions(
        self,
        status: TransactionStatusEnum | None,
        limit: int,
        offset: int,
        payer_id: str | None = None,
    ) -> tuple[list[FakeTransaction], int]:
        items = [
            item
            for item in self.db.transactions.values()
            if (status is None or item.status == status) and (payer_id is None or item.payer_id == payer_id)
        ]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[offset : offset + limit], len(items)

    async def get_payer(self, payer_id: str) -> SimpleNamespace | None:
        return self.db.users.get(payer_id)

    async def get_transaction_stats(self, month_start: datetime) -> dict[str, int | float]:
        items = list(self.db.transactions.values())
        by_status = {status: [item for item in items if item.status == status] for status in TransactionStatusEnum}
        succeeded = by_status[TransactionStatusEnum.SUCCESS]
        revenue = sum(item.amount_minor_units for item in succeeded)
        return {
            "transactions_total": len(items),
            "transactions_pending": len(by_status[TransactionStatusEnum.PENDING]),
            "transactions_success": len(succeeded),
            "transactions_failed": len(by_status[TransactionStatusEnum.FAILED]),
            "transactions_refunded": len(by_status[TransactionStatusEnum.REFUNDED]),
            "transactions_this_month": len([item for item in items if item.created_at >= month_start]),
            "revenue_minor_units": revenue,
            "refunded_minor_units": sum(item.amount_minor_units for item in by_status[TransactionStatusEnum.REFUNDED]),
            "revenue_this_month_minor_units": sum(
                item.amount_minor_units for item in succeeded if item.created_at >= month_start
            ),
            "average_order_minor_units": round(revenue / len(succeeded)) if succeeded else 0,
            "success_rate": round(len(succeeded) / len(items) * 100, 2) if items else 0.0,
        }


class FakeAuditRepository:
    def __init__(self, writes: PendingWrites) -> None:
        self.writes = writes

    async def create_audit_log(self, actor_id, action, entity_type, entity_id, payload) -> dict:
        log = {
            "actor_id": actor_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "payload": payload,
        }
        self.writes.audit_logs.append(log)
        return log

    async def create_outbox_event(self, aggregate_type, aggregate_id, event_type, payload) -> dict:
        event = {
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "event_type": event_type,
            "payload": payload,
        }
        self.writes.outbox_events.append(event)
        return event


class FakeLedgerStore:
    """Drop-in for LedgerStore; commits a unit only on clean exit."""

    def __init__(self, db: FakeLedgerDatabase) -> None:
        self.db = db

    @asynccontextmanager
    async def atomic(self, *, read_only: bool = False) -> AsyncIterator[LedgerUnit]:
        if read_only:
            self.db.read_only_units_opened += 1
        else:
            self.db.units_opened += 1
        writes = PendingWrites()
        self.db.in_flight.append(writes)
        try:
            yield LedgerUnit(
                ledger=FakeLedgerRepository(self.db, writes),
                audit=FakeAuditRepository(writes),
            )
            if read_only and (writes.transactions or writes.enrollments):
                raise AssertionError("write attempted in a read-only unit")
            self.db.commit(writes)
        finally:
            self.db.in_flight.remove(writes)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_event(
    outcome: PaymentOutcomeEnum = PaymentOutcomeEnum.SUCCEEDED,
    **kwargs,
) -> PaymentOutcomeEvent:
    values = {
        "purchase_reference": "ref-1",
        "payer_id": "user-1",
        "course_id": "course-1",
        "outcome": outcome,
        "amount_minor_units": 4900,
        "currency": "usd",
        "item_description": "Intro to Python (course-1)",
    }
    values.update(kwargs)
    return PaymentOutcomeEvent(**values)


WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_session_event(event_type: str = "checkout.session.completed", **session_overrides) -> dict:
    session = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "payment_status": "paid",
        "status": "complete",
        "amount_total": 4900,
        "currency": "usd",
        "client_reference_id": "user-1",
        "metadata": {
            "payer_id": "user-1",
            "course_id": "course-1",
            "item_description": "Intro to Python (course-1)",
        },
    }
    session.update(session_overrides)
    return {"id": "evt_1", "type": event_type, "data": {"object": session}}


def payment_intent_event(event_type: str, **intent_overrides) -> dict:
    intent = {
        "id": "pi_test_456",
        "object": "payment_intent",
        "status": "succeeded",
        "amount": 9900,
        "currency": "usd",
        "metadata": {"payer_id": "user-2", "course_id": "course-2"},
    }
    intent.update(intent_overrides)
    return {"id": "evt_2", "type": event_type, "data": {"object": intent}}
