"""Atomic units of work against the payments ledger."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.modules.audit.repository import AuditRepository
from app.modules.payments.repository import LedgerRepository


@dataclass(slots=True)
class LedgerUnit:
    """Repositories sharing one database transaction."""

    ledger: LedgerRepository
    audit: AuditRepository


class LedgerStore:
    """Open all-or-nothing units with bounded lock wait and duration.

    Every unit runs in its own session and commits on clean exit. On
    PostgreSQL the unit sets ``lock_timeout`` (max wait for contended rows)
    and ``statement_timeout`` (max duration of any statement); exceeding
    either surfaces as a database error that callers classify as transient.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_wait_ms: int = 2000,
        max_duration_ms: int = 5000,
    ) -> None:
        self.session_factory = session_factory
        self.max_wait_ms = int(max_wait_ms)
        self.max_duration_ms = int(max_duration_ms)

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> "LedgerStore":
        return cls(
            session_factory,
            max_wait_ms=settings.reconcile_max_wait_ms,
            max_duration_ms=settings.reconcile_max_duration_ms,
        )

    @asynccontextmanager
    async def atomic(self, *, read_only: bool = False) -> AsyncIterator[LedgerUnit]:
        async with self.session_factory() as session:
            async with session.begin():
                await self._configure_unit(session, read_only=read_only)
                yield LedgerUnit(
                    ledger=LedgerRepository(session),
                    audit=AuditRepository(session),
                )

    async def _configure_unit(self, session: AsyncSession, *, read_only: bool) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        if read_only:
            await session.execute(text("SET TRANSACTION READ ONLY"))
        # SET does not accept bind parameters; both values are validated ints.
        await session.execute(text(f"SET LOCAL lock_timeout = {self.max_wait_ms}"))
        await session.execute(text(f"SET LOCAL statement_timeout = {self.max_duration_ms}"))
