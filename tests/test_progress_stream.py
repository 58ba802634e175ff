import asyncio
import json

from cryptotaxreport import state_machine as sm
from cryptotaxreport.progress_stream import sse_event, stream_progress
from cryptotaxreport.schemas import ReportRequestCreate


def _collect(gen):
    async def run():
        return [frame async for frame in gen]

    return [json.loads(f[len("data: "):]) for f in asyncio.run(run())]


def _snap(status, progress, message, **extra):
    base = {"status": status, "progress": progress, "message": message, "attempt": 1,
            "artifact_ref": None, "error_code": None, "error_message": None, "totals": {}}
    base.update(extra)
    return base


def test_sse_frame_format():
    assert sse_event({"type": "progress", "progress": 5}) == 'data: {"type":"progress","progress":5}\n\n'


def test_stream_emits_changes_then_complete():
    snapshots = [
        _snap("processing", 5, "Fetching"),
        _snap("processing", 5, "Fetching"),
        _snap("processing", 60, "Matching"),
        _snap("completed", 100, "Completed", artifact_ref="2024-01-01/x.json", totals={"net_result": "1"}),
    ]
    events = _collect(stream_progress("r1", lambda rid: snapshots.pop(0), poll_interval=0))

    assert [e["type"] for e in events] == ["progress", "progress", "progress", "complete"]
    assert [e.get("progress") for e in events[:3]] == [5, 60, 100]
    assert events[-1] == {"type": "complete", "artifactRef": "2024-01-01/x.json", "totals": {"net_result": "1"}}


def test_stream_ends_with_error_frame():
    snapshots = [
        _snap("processing", 35, "Resolving prices"),
        _snap("error", 35, "No price", error_code="PRICE_UNAVAILABLE", error_message="No price"),
    ]
    events = _collect(stream_progress("r1", lambda rid: snapshots.pop(0), poll_interval=0))
    assert events[-1] == {"type": "error", "code": "PRICE_UNAVAILABLE", "message": "No price"}


def test_unknown_request_is_a_single_error_frame():
    events = _collect(stream_progress("nope", lambda rid: None, poll_interval=0))
    assert events == [{"type": "error", "code": "NOT_FOUND", "message": "Report request not found."}]


def test_disconnect_stops_polling():
    calls = []

    async def gone():
        return True

    events = _collect(stream_progress("r1", lambda rid: calls.append(rid), poll_interval=0, is_disconnected=gone))
    assert events == []
    assert calls == []


def test_stream_reads_the_persisted_record(db):
    request_id = sm.create_request(db, ReportRequestCreate(
        source={"data_source": "api-key", "platform": "binance", "api_key": "demo", "api_secret": "demo"},
        fiscal_year=2023,
    )).id
    attempt = sm.begin_generation(db, request_id)
    sm.fail(db, request_id, attempt, "AUTHENTICATION_FAILURE", "Bad key")

    events = _collect(stream_progress(request_id, lambda rid: sm.snapshot(db, rid), poll_interval=0))
    assert events[0]["status"] == "error"
    assert events[-1] == {"type": "error", "code": "AUTHENTICATION_FAILURE", "message": "Bad key"}
