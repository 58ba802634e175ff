# tests/test_api_smoke.py
# Run with:
#   pytest -q -m smoke --maxfail=1 --disable-warnings -rA

from __future__ import annotations

import dataclasses
import datetime
import json

import pytest
from fastapi.testclient import TestClient

from cryptotaxreport.__about__ import __version__
from cryptotaxreport.app import create_app
from cryptotaxreport.pipeline import PipelineDeps

from conftest import FakeResponse

pytestmark = pytest.mark.smoke

DEMO_YEAR = datetime.datetime.now(datetime.timezone.utc).year - 1
DEMO_SOURCE = {"data_source": "api-key", "platform": "binance", "api_key": "demo", "api_secret": "demo"}


@pytest.fixture
def client(settings, db, store, fake_session):
    app = create_app(settings=settings, db=db, deps=PipelineDeps(settings=settings, store=store, http=fake_session))
    with TestClient(app) as c:
        yield c


def _create(client, **overrides) -> dict:
    body = {"source": DEMO_SOURCE, "fiscal_year": DEMO_YEAR, "report_type": "model-100", "file_format": "json"}
    body.update(overrides)
    res = client.post("/report-requests", json=body)
    assert res.status_code == 201, res.text
    return res.json()


# --------------------------------------------------------------------------------------
# Health
# --------------------------------------------------------------------------------------
def test_health_and_version(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/version").json()["version"] == __version__


# --------------------------------------------------------------------------------------
# Report request lifecycle
# --------------------------------------------------------------------------------------
def test_create_read_and_redacted_credentials(client):
    created = _create(client)
    assert created["status"] == "draft"
    assert created["attempt"] == 0
    assert created["source"]["api_key"] == "****"
    assert created["source"]["api_secret"] == "****"

    read = client.get(f"/report-requests/{created['id']}").json()
    assert read["id"] == created["id"]
    listed = client.get("/report-requests", params={"status": "draft"}).json()["items"]
    assert [r["id"] for r in listed] == [created["id"]]


def test_default_lot_method_comes_from_settings(settings, db, store, fake_session):
    lifo = dataclasses.replace(settings, default_lot_method="LIFO")
    app = create_app(settings=lifo, db=db, deps=PipelineDeps(settings=lifo, store=store, http=fake_session))
    with TestClient(app) as c:
        assert _create(c)["lot_method"] == "LIFO"
        assert _create(c, lot_method="FIFO")["lot_method"] == "FIFO"


def test_invalid_payloads_are_rejected(client):
    bad_wallet = {"data_source": "wallet", "address": "0xnothex", "chain": "ethereum"}
    assert client.post("/report-requests", json={"source": bad_wallet, "fiscal_year": DEMO_YEAR}).status_code == 422
    assert client.post("/report-requests", json={"source": DEMO_SOURCE, "fiscal_year": 1999}).status_code == 422
    bad_nif = {"source": DEMO_SOURCE, "fiscal_year": DEMO_YEAR, "taxpayer": {"nif": "123"}}
    assert client.post("/report-requests", json=bad_nif).status_code == 422


def test_generate_progress_and_download(client):
    request_id = _create(client)["id"]

    res = client.post(f"/report-requests/{request_id}/generate")
    assert res.status_code == 202, res.text
    assert res.json() == {"id": request_id, "status": "processing", "attempt": 1}

    # TestClient runs background tasks before returning
    row = client.get(f"/report-requests/{request_id}").json()
    assert row["status"] == "completed", row
    assert row["totals"] == {
        "total_transactions": 6,
        "total_gains": "2387.8",
        "total_losses": "1",
        "net_result": "2386.8",
    }

    again = client.post(f"/report-requests/{request_id}/generate")
    assert again.status_code == 409
    assert again.json()["code"] == "CONFLICT"

    stream = client.get(f"/report-requests/{request_id}/progress")
    assert stream.headers["content-type"].startswith("text/event-stream")
    frames = [json.loads(line[len("data: "):]) for line in stream.text.splitlines() if line.startswith("data: ")]
    assert frames[-1]["type"] == "complete"
    assert frames[-1]["artifactRef"] == row["artifact_ref"]

    download = client.get(f"/report-requests/{request_id}/download")
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("application/json")
    assert f'filename="model-100_{DEMO_YEAR}.json"' in download.headers["content-disposition"]
    assert json.loads(download.content)["totals"]["net_result"] == "2386.8"


def test_failed_generation_is_reported_and_retryable(client):
    source = {"data_source": "csv", "content": f"timestamp,type,asset,amount\n{DEMO_YEAR}-02-01T00:00:00Z,buy,XYZ,1\n"}
    request_id = _create(client, source=source)["id"]

    client.post(f"/report-requests/{request_id}/generate")
    row = client.get(f"/report-requests/{request_id}").json()
    assert row["status"] == "error"
    assert row["error_code"] == "PRICE_UNAVAILABLE"
    assert client.get(f"/report-requests/{request_id}/download").status_code == 409

    frames = client.get(f"/report-requests/{request_id}/progress").text
    assert '"code":"PRICE_UNAVAILABLE"' in frames

    # fix the configuration, then retry from error
    patch = {"price_overrides": {f"XYZ:{DEMO_YEAR}-02-01": "12.5"}}
    assert client.patch(f"/report-requests/{request_id}", json=patch).status_code == 200
    res = client.post(f"/report-requests/{request_id}/generate")
    assert res.json()["attempt"] == 2
    assert client.get(f"/report-requests/{request_id}").json()["status"] == "completed"


def test_patch_and_delete_rules(client):
    request_id = _create(client)["id"]
    res = client.patch(f"/report-requests/{request_id}", json={"lot_method": "LIFO"})
    assert res.status_code == 200 and res.json()["lot_method"] == "LIFO"
    assert client.patch(f"/report-requests/{request_id}", json={"status": "completed"}).status_code == 422

    client.post(f"/report-requests/{request_id}/generate")
    assert client.patch(f"/report-requests/{request_id}", json={"lot_method": "FIFO"}).status_code == 409

    assert client.delete(f"/report-requests/{request_id}").status_code == 204
    missing = client.get(f"/report-requests/{request_id}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


def test_progress_for_unknown_request(client):
    text = client.get("/report-requests/does-not-exist/progress").text
    assert '"code":"NOT_FOUND"' in text


# --------------------------------------------------------------------------------------
# Source helpers
# --------------------------------------------------------------------------------------
def test_upload_csv_preview(client):
    content = (
        "timestamp,type,asset,amount,fiat_value\n"
        "2023-01-01T00:00:00Z,buy,BTC,0.1,1500\n"
        "2023-01-02T00:00:00Z,buy,BTC,zero,1\n"
    ).encode("utf-8")
    res = client.post("/upload/csv", files={"file": ("trades.csv", content, "text/csv")})
    assert res.status_code == 200, res.text
    data = res.json()
    assert data["total_valid"] == 1
    assert data["total_errors"] == 1
    assert data["preview_first_5"][0]["asset"] == "BTC"
    assert data["errors"][0]["row_index"] == 3

    assert client.post("/upload/csv", files={"file": ("trades.txt", content, "text/plain")}).status_code == 400


def test_upload_csv_with_invalid_utf8_is_a_row_error(client):
    content = b"timestamp,type,asset,amount\n2023-01-01T00:00:00Z,buy,BTC,1\xff\n"
    res = client.post("/upload/csv", files={"file": ("latin1.csv", content, "text/csv")})
    assert res.status_code == 200, res.text
    data = res.json()
    assert data["total_valid"] == 0
    assert data["total_errors"] == 1
    assert data["errors"][0]["row_index"] == 2


def test_exchange_connection_check(client, fake_session):
    demo = client.post("/exchange/test-connection", json={"platform": "binance", "api_key": "demo", "api_secret": "demo"})
    assert demo.json()["ok"] is True

    fake_session.queue(FakeResponse(401, {"code": -2015, "msg": "Invalid API-key"}))
    bad = client.post(
        "/exchange/test-connection",
        json={"platform": "binance", "api_key": "k" * 64, "api_secret": "s" * 64},
    )
    assert bad.status_code == 200
    assert bad.json()["ok"] is False

    unsupported = client.post(
        "/exchange/test-connection",
        json={"platform": "kraken", "api_key": "k" * 64, "api_secret": "s" * 64},
    )
    assert unsupported.status_code == 400
    assert unsupported.json()["code"] == "VALIDATION_ERROR"
