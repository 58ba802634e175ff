import dataclasses
import datetime
import json
from decimal import Decimal

import pytest

from cryptotaxreport import state_machine as sm
from cryptotaxreport.models import utcnow
from cryptotaxreport.pipeline import PipelineDeps, _year_end, run_generation
from cryptotaxreport.report_compiler import read_csv_summary
from cryptotaxreport.schemas import ReportRequestCreate

# the demo ledger is anchored in the previous calendar year
DEMO_YEAR = datetime.datetime.now(datetime.timezone.utc).year - 1
DEMO_SOURCE = {"data_source": "api-key", "platform": "binance", "api_key": "demo", "api_secret": "demo"}


@pytest.fixture
def deps(settings, store, fake_session):
    return PipelineDeps(settings=settings, store=store, http=fake_session)


def _start(db, **config):
    config.setdefault("source", DEMO_SOURCE)
    config.setdefault("fiscal_year", DEMO_YEAR)
    row = sm.create_request(db, ReportRequestCreate(**config))
    return row.id, sm.begin_generation(db, row.id)


def test_model100_demo_run_completes(db, deps, store):
    request_id, attempt = _start(db, file_format="json", taxpayer={"nif": "12345678z", "name": "Ana"})
    assert run_generation(db, request_id, attempt, deps) == "completed"

    row = sm.get_request(db, request_id)
    assert row.status == "completed"
    assert row.progress == 100
    assert row.total_transactions == 6
    assert row.total_gains == Decimal("2387.8")
    assert row.total_losses == Decimal("1")
    assert row.net_result == Decimal("2386.8")
    assert len(row.input_hash) == 64 and len(row.output_hash) == 64
    assert row.generated_report["filename"] == f"model-100_{DEMO_YEAR}.json"

    doc = json.loads(store.read(row.artifact_ref))
    assert doc["taxpayer"]["nif"] == "12345678Z"
    assert {e["virtual_currency"] for e in doc["form"]["entries"]} == {"BTC", "ETH", "USDT"}
    assert doc["holdings"]["USDT"]["quantity"] == "7000"


def test_identical_inputs_give_identical_digests(db, deps):
    first, a1 = _start(db, file_format="csv", lot_method="LIFO")
    second, a2 = _start(db, file_format="csv", lot_method="LIFO")
    run_generation(db, first, a1, deps)
    run_generation(db, second, a2, deps)

    r1, r2 = sm.get_request(db, first), sm.get_request(db, second)
    assert r1.input_hash == r2.input_hash
    assert r1.output_hash == r2.output_hash
    # same bytes, same content-addressed artifact
    assert r1.artifact_ref == r2.artifact_ref


def test_csv_artifact_summary_matches_stored_totals(db, deps, store):
    request_id, attempt = _start(db, file_format="csv")
    run_generation(db, request_id, attempt, deps)
    row = sm.get_request(db, request_id)
    summary = read_csv_summary(store.read(row.artifact_ref))
    assert Decimal(summary["net_result"]) == row.net_result
    assert int(summary["total_transactions"]) == row.total_transactions


def test_model720_values_holdings_at_year_end(db, deps, store):
    overrides = {
        f"BTC:{DEMO_YEAR}-12-31": "40000",
        f"ETH:{DEMO_YEAR}-12-31": "2000",
        f"USDT:{DEMO_YEAR}-12-31": "0.9",
    }
    request_id, attempt = _start(db, report_type="model-720", file_format="json", price_overrides=overrides)
    assert run_generation(db, request_id, attempt, deps) == "completed"

    doc = json.loads(store.read(sm.get_request(db, request_id).artifact_ref))
    form = doc["form"]
    assert form["valuation_date"] == f"{DEMO_YEAR}-12-31"
    # 0.3 BTC x 40000 + 3 ETH x 2000 + 7000 USDT x 0.9
    assert form["total_value_eur"] == "24300"
    assert form["declaration_required"] is False


def test_missing_price_fails_with_actionable_message(db, deps):
    source = {
        "data_source": "csv",
        "content": f"timestamp,type,asset,amount\n{DEMO_YEAR}-03-01T10:00:00Z,buy,XYZ,5\n",
    }
    request_id, attempt = _start(db, source=source)
    assert run_generation(db, request_id, attempt, deps) == "error"

    row = sm.get_request(db, request_id)
    assert row.error_code == "PRICE_UNAVAILABLE"
    assert f"XYZ:{DEMO_YEAR}-03-01" in row.error_message
    assert "override" in row.error_message
    assert row.artifact_ref is None


def test_malformed_rows_become_warnings(db, deps):
    source = {
        "data_source": "csv",
        "content": (
            "timestamp,type,asset,amount,fiat_value\n"
            f"{DEMO_YEAR}-03-01T10:00:00Z,buy,BTC,1,30000\n"
            f"{DEMO_YEAR}-03-02T10:00:00Z,buy,BTC,oops,1\n"
            f"{DEMO_YEAR}-04-01T10:00:00Z,sell,BTC,1.5,45000\n"
        ),
    }
    request_id, attempt = _start(db, source=source, file_format="json")
    assert run_generation(db, request_id, attempt, deps) == "completed"

    kinds = sorted(w["kind"] for w in sm.get_request(db, request_id).warnings)
    assert kinds == ["insufficient_cost_basis", "malformed_input"]


def test_superseded_attempt_stops_quietly(db, deps):
    request_id, attempt = _start(db)
    sm.expire_stale(db, 1, now=utcnow() + datetime.timedelta(seconds=60))

    assert run_generation(db, request_id, attempt, deps) == "superseded"
    row = sm.get_request(db, request_id)
    assert (row.status, row.error_code) == ("error", "TIMEOUT")


def test_time_budget_is_enforced(db, settings, store, fake_session):
    tight = PipelineDeps(settings=dataclasses.replace(settings, generation_timeout=-1), store=store, http=fake_session)
    request_id, attempt = _start(db)
    assert run_generation(db, request_id, attempt, tight) == "error"
    assert sm.get_request(db, request_id).error_code == "TIMEOUT"


def test_unexpected_errors_are_internal(db, settings, store):
    def broken_connector(data_source):
        raise RuntimeError("boom")

    broken = PipelineDeps(settings=settings, store=store, connector_for=broken_connector)
    request_id, attempt = _start(db)
    assert run_generation(db, request_id, attempt, broken) == "error"

    row = sm.get_request(db, request_id)
    assert row.error_code == "INTERNAL_ERROR"
    assert "boom" not in row.error_message


def test_year_end_is_local_to_the_fiscal_timezone(settings):
    end = _year_end(2023, settings.fiscal_tz)
    assert end.astimezone(datetime.timezone.utc) == datetime.datetime(
        2023, 12, 31, 22, 59, 59, 999999, tzinfo=datetime.timezone.utc
    )


def test_holdings_snapshot_stops_at_madrid_midnight(db, deps, store):
    year = DEMO_YEAR - 1
    source = {
        "data_source": "csv",
        "content": (
            "timestamp,type,asset,amount,fiat_value\n"
            f"{year}-03-01T10:00:00Z,buy,BTC,1,20000\n"
            # already January 1st in Madrid
            f"{year}-12-31T23:30:00Z,buy,BTC,2,80000\n"
        ),
    }
    overrides = {f"BTC:{year}-12-31": "40000"}
    request_id, attempt = _start(
        db, source=source, fiscal_year=year, report_type="model-714",
        file_format="json", price_overrides=overrides,
    )
    assert run_generation(db, request_id, attempt, deps) == "completed"

    doc = json.loads(store.read(sm.get_request(db, request_id).artifact_ref))
    assert doc["form"]["valuation_date"] == f"{year}-12-31"
    assert doc["holdings"]["BTC"]["quantity"] == "1"
