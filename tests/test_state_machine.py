import datetime
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from cryptotaxreport import state_machine as sm
from cryptotaxreport.errors import GenerationConflict, InvalidTransition, NotFound
from cryptotaxreport.models import utcnow
from cryptotaxreport.schemas import ReportRequestCreate, ReportRequestUpdate, ReportTotals

DEMO_SOURCE = {"data_source": "api-key", "platform": "binance", "api_key": "demo", "api_secret": "demo"}


@pytest.fixture
def request_id(db):
    row = sm.create_request(
        db, ReportRequestCreate(source=DEMO_SOURCE, fiscal_year=2023, file_format="json")
    )
    return row.id


def _complete(db, request_id, attempt):
    return sm.complete(
        db, request_id, attempt,
        report={"filename": "model-100_2023.json"},
        artifact_ref="2024-01-01/abc.json",
        content_type="application/json",
        totals=ReportTotals(total_transactions=3, total_gains=Decimal("10.5"),
                            total_losses=Decimal("2"), net_result=Decimal("8.5")),
        warnings=[],
    )


def test_new_request_is_a_draft(db, request_id):
    row = sm.get_request(db, request_id)
    assert row.status == "draft"
    assert row.attempt == 0
    assert row.progress == 0
    assert row.source_data["api_key"] == "demo"
    assert [r.id for r in sm.list_requests(db, status="draft")] == [request_id]
    assert sm.list_requests(db, status="processing") == []


def test_unknown_id_is_not_found(db):
    with pytest.raises(NotFound):
        sm.get_request(db, "missing")
    assert sm.snapshot(db, "missing") is None


def test_concurrent_triggers_only_one_wins(db, request_id):
    def trigger(_):
        try:
            return sm.begin_generation(db, request_id)
        except GenerationConflict:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(trigger, range(8)))

    assert [r for r in results if r is not None] == [1]
    row = sm.get_request(db, request_id)
    assert row.status == "processing"
    assert row.attempt == 1
    assert row.progress_message == sm.QUEUED_MESSAGE


def test_generate_while_processing_or_completed_conflicts(db, request_id):
    attempt = sm.begin_generation(db, request_id)
    with pytest.raises(GenerationConflict) as exc:
        sm.begin_generation(db, request_id)
    assert exc.value.status_code == 409

    assert _complete(db, request_id, attempt)
    with pytest.raises(GenerationConflict):
        sm.begin_generation(db, request_id)


def test_progress_is_monotonic_and_attempt_scoped(db, request_id):
    attempt = sm.begin_generation(db, request_id)
    assert sm.update_progress(db, request_id, attempt, 30, "Fetching")
    assert not sm.update_progress(db, request_id, attempt, 20, "Going back")
    assert not sm.update_progress(db, request_id, attempt + 1, 90, "Not my attempt")
    assert sm.update_progress(db, request_id, attempt, 250, "Clamped")

    snap = sm.snapshot(db, request_id)
    assert snap["progress"] == 100
    assert snap["message"] == "Clamped"


def test_complete_records_results(db, request_id):
    attempt = sm.begin_generation(db, request_id)
    assert _complete(db, request_id, attempt)

    row = sm.get_request(db, request_id)
    assert row.status == "completed"
    assert row.progress == 100
    assert row.artifact_ref == "2024-01-01/abc.json"
    assert row.total_gains == Decimal("10.5")
    assert row.finished_at is not None
    assert sm.snapshot(db, request_id)["totals"] == {
        "total_transactions": 3, "total_gains": "10.5", "total_losses": "2", "net_result": "8.5",
    }
    # no further progress after the terminal state
    assert not sm.update_progress(db, request_id, attempt, 100, "late")


def test_retry_after_error_supersedes_the_old_attempt(db, request_id):
    first = sm.begin_generation(db, request_id)
    assert sm.fail(db, request_id, first, "PRICE_UNAVAILABLE", "No price for BTC:2023-12-31")

    row = sm.get_request(db, request_id)
    assert (row.status, row.error_code) == ("error", "PRICE_UNAVAILABLE")

    second = sm.begin_generation(db, request_id)
    assert second == first + 1
    row = sm.get_request(db, request_id)
    assert row.error_code is None and row.error_message is None

    # the earlier run's late writes change nothing
    assert not _complete(db, request_id, first)
    assert not sm.fail(db, request_id, first, "INTERNAL_ERROR", "late")
    assert sm.get_request(db, request_id).status == "processing"


def test_configuration_is_editable_only_in_draft_or_error(db, request_id):
    row = sm.update_config(db, request_id, ReportRequestUpdate(lot_method="LIFO", price_overrides={"btc:2023-12-31": "40000"}))
    assert row.lot_method == "LIFO"
    assert row.price_overrides == {"BTC:2023-12-31": "40000"}

    sm.begin_generation(db, request_id)
    with pytest.raises(InvalidTransition):
        sm.update_config(db, request_id, ReportRequestUpdate(fiscal_year=2022))
    assert sm.get_request(db, request_id).fiscal_year == 2023


def test_lifecycle_fields_are_not_patchable():
    with pytest.raises(PydanticValidationError):
        ReportRequestUpdate(status="completed")


def test_delete_rules(db, request_id):
    sm.begin_generation(db, request_id)
    with pytest.raises(InvalidTransition):
        sm.delete_request(db, request_id)

    other = sm.create_request(db, ReportRequestCreate(source=DEMO_SOURCE, fiscal_year=2023)).id
    sm.delete_request(db, other)
    with pytest.raises(NotFound):
        sm.get_request(db, other)
    with pytest.raises(NotFound):
        sm.delete_request(db, other)


def test_expire_stale_times_out_long_runs(db, request_id):
    attempt = sm.begin_generation(db, request_id)
    assert sm.expire_stale(db, 60) == []

    later = utcnow() + datetime.timedelta(seconds=120)
    assert sm.expire_stale(db, 60, now=later) == [request_id]

    snap = sm.snapshot(db, request_id)
    assert snap["status"] == "error"
    assert snap["error_code"] == "TIMEOUT"
    assert not sm.update_progress(db, request_id, attempt, 50, "too late")
    # the timed-out request can be retried
    assert sm.begin_generation(db, request_id) == attempt + 1


def test_lot_method_falls_back_to_the_configured_default(db):
    implicit = sm.create_request(
        db, ReportRequestCreate(source=DEMO_SOURCE, fiscal_year=2023), default_lot_method="LIFO"
    )
    explicit = sm.create_request(
        db, ReportRequestCreate(source=DEMO_SOURCE, fiscal_year=2023, lot_method="FIFO"), default_lot_method="LIFO"
    )
    assert sm.get_request(db, implicit.id).lot_method == "LIFO"
    assert sm.get_request(db, explicit.id).lot_method == "FIFO"
    assert sm.create_request(db, ReportRequestCreate(source=DEMO_SOURCE, fiscal_year=2023)).lot_method == "FIFO"
