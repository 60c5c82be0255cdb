from __future__ import annotations

import pytest

from app.core.enums import RoleEnum
from fakes import FakeLedgerDatabase, FakeLedgerStore, SleepRecorder


@pytest.fixture()
def ledger_db() -> FakeLedgerDatabase:
    db = FakeLedgerDatabase()
    db.add_user("user-1")
    db.add_user("user-2")
    db.add_user("admin-1", RoleEnum.ADMIN)
    db.add_course("course-1")
    db.add_course("course-2", title="Advanced SQL", price_minor_units=9900)
    return db


@pytest.fixture()
def ledger_store(ledger_db: FakeLedgerDatabase) -> FakeLedgerStore:
    return FakeLedgerStore(ledger_db)


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
