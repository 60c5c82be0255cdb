from __future__ import annotations

import pytest
from fastapi import Request, Response

import app.main as main_module
from app.core.metrics import build_metrics_response, instrument_http_request, record_reconcile_outcome
from app.modules.payments.reconciler import Reconciler
from app.modules.payments.retry import ReconcileRetryDriver
from fakes import FIXED_NOW, make_event, serialization_failure


def _make_request(path: str) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [],
        "client": ("127.0.0.1", 12345),
        "scheme": "http",
        "server": ("testserver", 80),
        "query_string": b"",
    }
    return Request(scope)


@pytest.mark.asyncio
async def test_http_metrics_instrumentation_tracks_status_and_path() -> None:
    async def _no_content(_: Request) -> Response:
        return Response(status_code=204)

    request = _make_request("/health")
    await instrument_http_request(request, _no_content)

    payload = build_metrics_response().body.decode("utf-8")
    assert "learnhub_http_requests_total" in payload
    assert 'path="/health"' in payload
    assert 'status_code="204"' in payload


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_prometheus_payload() -> None:
    response = await main_module.metrics_endpoint(_make_request("/metrics"))
    payload = response.body.decode("utf-8")

    assert response.status_code == 200
    assert "learnhub_http_requests_total" in payload


def test_reconcile_outcomes_are_labelled_by_channel_and_kind() -> None:
    record_reconcile_outcome("webhook", "applied")

    payload = build_metrics_response().body.decode("utf-8")
    assert 'learnhub_reconcile_outcomes_total{channel="webhook",kind="applied"}' in payload


@pytest.mark.asyncio
async def test_conflicting_attempts_are_counted(ledger_store, ledger_db, sleep_recorder) -> None:
    def _conflicts() -> float:
        payload = build_metrics_response().body.decode("utf-8")
        for line in payload.splitlines():
            if line.startswith("learnhub_reconcile_conflicts_total "):
                return float(line.split()[-1])
        return 0.0

    before = _conflicts()
    ledger_db.fail_next("payer_exists", serialization_failure("SELECT users"), times=2)
    driver = ReconcileRetryDriver(Reconciler(ledger_store, now_provider=lambda: FIXED_NOW), sleep=sleep_recorder)

    await driver.with_retry(make_event())

    assert _conflicts() == before + 2
