from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest

from app.core.config import Settings
from app.modules.audit.repository import AuditRepository
from app.modules.payments.repository import LedgerRepository
from app.modules.payments.store import LedgerStore


class RecordingSession:
    def __init__(self, dialect: str) -> None:
        self.dialect = dialect
        self.statements: list[str] = []
        self.committed = False
        self.rolled_back = False

    async def __aenter__(self) -> "RecordingSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    @asynccontextmanager
    async def begin(self):
        try:
            yield self
        except Exception:
            self.rolled_back = True
            raise
        self.committed = True

    def get_bind(self) -> SimpleNamespace:
        return SimpleNamespace(dialect=SimpleNamespace(name=self.dialect))

    async def execute(self, statement) -> None:
        self.statements.append(str(statement))


def _store(session: RecordingSession) -> LedgerStore:
    return LedgerStore(lambda: session, max_wait_ms=1500, max_duration_ms=4000)


@pytest.mark.asyncio
async def test_unit_bounds_lock_wait_and_duration_on_postgres() -> None:
    session = RecordingSession("postgresql")

    async with _store(session).atomic() as unit:
        assert isinstance(unit.ledger, LedgerRepository)
        assert isinstance(unit.audit, AuditRepository)
        assert unit.ledger.session is session

    assert session.statements == [
        "SET LOCAL lock_timeout = 1500",
        "SET LOCAL statement_timeout = 4000",
    ]
    assert session.committed is True


@pytest.mark.asyncio
async def test_read_only_unit_is_declared_read_only() -> None:
    session = RecordingSession("postgresql")

    async with _store(session).atomic(read_only=True):
        pass

    assert session.statements[0] == "SET TRANSACTION READ ONLY"


@pytest.mark.asyncio
async def test_failed_unit_is_rolled_back() -> None:
    session = RecordingSession("postgresql")

    with pytest.raises(RuntimeError):
        async with _store(session).atomic():
            raise RuntimeError("boom")

    assert session.rolled_back is True
    assert session.committed is False


@pytest.mark.asyncio
async def test_other_dialects_skip_session_settings() -> None:
    session = RecordingSession("sqlite")

    async with _store(session).atomic():
        pass

    assert session.statements == []


def test_store_reads_limits_from_settings() -> None:
    settings = Settings(_env_file=None, reconcile_max_wait_ms=750, reconcile_max_duration_ms=900)

    store = LedgerStore.from_settings(lambda: None, settings)

    assert store.max_wait_ms == 750
    assert store.max_duration_ms == 900
