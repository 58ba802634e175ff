# tests/conftest.py
from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from cryptotaxreport.artifacts import ArtifactStore
from cryptotaxreport.config import Settings
from cryptotaxreport.db import Database
from cryptotaxreport.schemas import Transaction


class FakeResponse:
    """Just enough of requests.Response for the connectors."""

    def __init__(self, status_code: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """
    Stand-in for requests.Session: replays queued responses in order and
    records every call as (url, params, headers).
    """

    def __init__(self, responses: Optional[List[FakeResponse]] = None):
        self.responses = list(responses or [])
        self.calls: List[tuple] = []

    def queue(self, *responses: FakeResponse) -> None:
        self.responses.extend(responses)

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, dict(params or {}), dict(headers or {})))
        if not self.responses:
            raise AssertionError(f"unexpected HTTP call to {url}")
        return self.responses.pop(0)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_url=f"sqlite:///{tmp_path / 'reports.db'}",
        artifact_dir=str(tmp_path / "artifacts"),
        poll_interval=0.01,
        watchdog_interval=3600,
        retry_attempts=3,
        retry_base_delay=0.5,
        retry_backoff=2.0,
        max_workers=2,
    )


@pytest.fixture
def db(settings):
    database = Database(settings.db_url)
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def store(settings) -> ArtifactStore:
    return ArtifactStore(settings.artifact_dir)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def sleeps() -> List[float]:
    """Collects the delays a retry loop asked for instead of sleeping."""
    return []


@pytest.fixture
def make_tx():
    def _make(
        tx_id: str,
        when: str,
        asset: str,
        tx_type: str,
        amount: str,
        fiat: Optional[str] = None,
        fee: Optional[str] = None,
        sequence: int = 0,
    ) -> Transaction:
        return Transaction(
            id=tx_id,
            timestamp=datetime.fromisoformat(when).replace(tzinfo=timezone.utc),
            asset=asset,
            type=tx_type,
            amount=Decimal(amount),
            fiat_value=Decimal(fiat) if fiat is not None else None,
            fee_amount=Decimal(fee) if fee is not None else None,
            sequence=sequence,
            source_ref="test",
        )

    return _make
