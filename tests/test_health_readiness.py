from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from sqlalchemy.exc import OperationalError

import app.main as main_module


def _request_with_session_factory(session_factory) -> SimpleNamespace:
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(session_factory=session_factory)))


class _Session:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.statements: list[str] = []

    async def __aenter__(self) -> "_Session":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def execute(self, statement) -> None:
        if self.error is not None:
            raise self.error
        self.statements.append(str(statement))


@pytest.mark.asyncio
async def test_readiness_check_returns_ready_when_database_is_available(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _ready(_request) -> bool:
        return True

    monkeypatch.setattr(main_module, "_is_database_ready", _ready)

    response = await main_module.readiness_check(_request_with_session_factory(None))

    assert response["status"] == "ready"
    assert response["database"] == "ok"
    assert "timestamp" in response


@pytest.mark.asyncio
async def test_readiness_check_returns_503_when_database_is_unavailable(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _not_ready(_request) -> bool:
        return False

    monkeypatch.setattr(main_module, "_is_database_ready", _not_ready)

    with pytest.raises(HTTPException) as exc:
        await main_module.readiness_check(_request_with_session_factory(None))
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_database_check_uses_application_session_factory() -> None:
    session = _Session()

    assert await main_module._is_database_ready(_request_with_session_factory(lambda: session)) is True
    assert session.statements == ["SELECT 1"]


@pytest.mark.asyncio
async def test_database_check_reports_connection_errors() -> None:
    session = _Session(OperationalError("SELECT 1", {}, Exception("connection refused")))

    assert await main_module._is_database_ready(_request_with_session_factory(lambda: session)) is False


@pytest.mark.asyncio
async def test_healthcheck_is_static() -> None:
    assert await main_module.healthcheck() == {"status": "ok"}
