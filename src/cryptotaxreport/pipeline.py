# pipeline.py
"""
One report generation, run outside the request/response cycle.

Stages (progress %, message):
   5  Fetching transactions…   connector for the request's data_source
  35  Resolving prices…        fill missing EUR values; any gap blocks completion
  60  Matching cost basis…     FIFO/LIFO lots up to the end of the fiscal year
  80  Compiling report…        form rule + CSV/JSON/PDF rendering
  95  Storing report…          content-addressed artifact + audit digests

The pipeline only talks to the state machine through (request_id, attempt):
if the attempt is superseded (watchdog timeout) its writes are refused and the
run stops quietly. Every ReportGenerationError becomes `error` with its code;
anything else is logged with traceback and stored as INTERNAL_ERROR.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, tzinfo
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from . import state_machine as sm
from .artifacts import ArtifactStore
from .audit_digest import compute_digests
from .config import Settings
from .connectors import Connector, get_connector
from .cost_basis import compute_cost_basis, holdings_summary
from .db import Database
from .errors import (
    GenerationTimeout,
    InvalidTransition,
    PriceUnavailableError,
    ReportGenerationError,
    ValidationError,
)
from .models import ReportStatus
from .price_resolver import PriceResolver, PriceUnavailable
from .report_compiler import compile_report
from .rules import FormContext, rule_for
from .schemas import parse_source

logger = logging.getLogger(__name__)

FETCHING = (5, "Fetching transactions…")
FETCHED = (30, "Transactions fetched")
PRICING = (35, "Resolving prices…")
MATCHING = (60, "Matching cost basis…")
COMPILING = (80, "Compiling report…")
STORING = (95, "Storing report…")


class AttemptSuperseded(InvalidTransition):
    default_message = "This generation attempt is no longer current."


@dataclass
class PipelineDeps:
    settings: Settings
    store: ArtifactStore
    http: Optional[requests.Session] = None
    connector_for: Optional[Callable[[str], Connector]] = None
    resolver_for: Optional[Callable[[Mapping[str, Decimal]], PriceResolver]] = None
    # defaults to the current date in the fiscal timezone
    today: Optional[Callable[[], date]] = None

    def connector(self, data_source: str) -> Connector:
        if self.connector_for is not None:
            return self.connector_for(data_source)
        return get_connector(data_source, session=self.http, settings=self.settings)

    def resolver(self, overrides: Mapping[str, Decimal]) -> PriceResolver:
        if self.resolver_for is not None:
            return self.resolver_for(overrides)
        return PriceResolver(session=self.http, settings=self.settings, overrides=overrides)


class ProgressReporter:
    """
    Single writer of progress for one attempt. Also enforces the wall-clock
    budget at every stage boundary.
    """

    def __init__(self, db: Database, request_id: str, attempt: int, budget_seconds: float) -> None:
        self.db = db
        self.request_id = request_id
        self.attempt = attempt
        self.budget_seconds = budget_seconds
        self._started = time.monotonic()
        self._last = 0
        self._lock = threading.Lock()

    def report(self, progress: int, message: str) -> None:
        if time.monotonic() - self._started > self.budget_seconds:
            raise GenerationTimeout()
        with self._lock:
            if progress < self._last:
                return
            if not sm.update_progress(self.db, self.request_id, self.attempt, progress, message):
                raise AttemptSuperseded(detail=f"{self.request_id} attempt {self.attempt}")
            self._last = progress
        logger.info("[%s] %s%% %s", self.request_id, progress, message)


def _year_end(year: int, tz: tzinfo) -> datetime:
    """Last instant of the fiscal year, local to the jurisdiction."""
    return datetime(year, 12, 31, 23, 59, 59, 999999, tzinfo=tz)


def run_generation(db: Database, request_id: str, attempt: int, deps: PipelineDeps) -> str:
    """Run all stages for one attempt; returns the final status written."""
    reporter = ProgressReporter(db, request_id, attempt, deps.settings.generation_timeout)
    warnings: List[Dict[str, Any]] = []
    try:
        _run(db, request_id, attempt, deps, reporter, warnings)
        return ReportStatus.COMPLETED.value
    except AttemptSuperseded:
        logger.warning("Generation %s attempt %s was superseded; stopping", request_id, attempt)
        return "superseded"
    except ReportGenerationError as e:
        logger.warning("Generation %s failed: %s %s", request_id, e.code, e.detail or e.message)
        sm.fail(db, request_id, attempt, e.code, e.message, warnings)
        return ReportStatus.ERROR.value
    except Exception:
        logger.exception("Generation %s crashed", request_id)
        internal = ReportGenerationError()
        sm.fail(db, request_id, attempt, internal.code, internal.message, warnings)
        return ReportStatus.ERROR.value


def _run(
    db: Database,
    request_id: str,
    attempt: int,
    deps: PipelineDeps,
    reporter: ProgressReporter,
    warnings: List[Dict[str, Any]],
) -> None:
    row = sm.get_request(db, request_id)
    settings = deps.settings
    rule = rule_for(row.report_type)
    tz = settings.fiscal_tz
    year_end = _year_end(row.fiscal_year, tz)

    # 1) fetch
    reporter.report(*FETCHING)
    try:
        source = parse_source(row.source_data)
    except PydanticValidationError as ve:
        raise ValidationError("The stored data source configuration is invalid.", detail=str(ve)) from ve
    fetched = deps.connector(row.data_source).fetch(source)
    warnings.extend(w.to_dict() for w in fetched.warnings)
    # later movements cannot change this year's lots
    in_scope = [t for t in fetched.transactions if t.timestamp <= year_end]
    logger.info(
        "[%s] %d transactions fetched, %d up to %s",
        request_id, len(fetched.transactions), len(in_scope), year_end.date(),
    )
    reporter.report(*FETCHED)

    # 2) prices
    reporter.report(*PRICING)
    overrides = {k: Decimal(v) for k, v in (row.price_overrides or {}).items()}
    resolver = deps.resolver(overrides)
    priced, missing = resolver.price_transactions(in_scope)
    if missing:
        raise PriceUnavailableError(missing)

    # 3) cost basis
    reporter.report(*MATCHING)
    result = compute_cost_basis(
        priced,
        method=row.lot_method,
        policy=settings.excess_disposal_policy,
        until=year_end,
        max_workers=settings.max_workers,
    )
    warnings.extend(w.to_dict() for w in result.warnings)
    holdings = holdings_summary(result.open_lots)

    valuation_date: Optional[date] = None
    holding_prices: Dict[str, Decimal] = {}
    if rule.needs_holdings:
        today = deps.today() if deps.today is not None else datetime.now(tz).date()
        valuation_date = min(year_end.date(), today)
        at = datetime.combine(valuation_date, dtime(12, 0), tzinfo=tz)
        gaps: List[PriceUnavailable] = []
        for asset in holdings:
            price = resolver.resolve(asset, at)
            if isinstance(price, PriceUnavailable):
                gaps.append(price)
            else:
                holding_prices[asset] = price
        if gaps:
            raise PriceUnavailableError(gaps)

    # 4) compile
    reporter.report(*COMPILING)
    ctx = FormContext(
        fiscal_year=row.fiscal_year,
        lot_method=row.lot_method,
        taxpayer={"nif": row.taxpayer_nif, "name": row.taxpayer_name, "surname": row.taxpayer_surname},
        holdings=holdings,
        holding_prices=holding_prices,
        valuation_date=valuation_date,
    )
    compiled = compile_report(
        events=result.disposals,
        transactions=priced,
        fiscal_year=row.fiscal_year,
        report_type=row.report_type,
        file_format=row.file_format,
        ctx=ctx,
        holdings=holdings,
        tz=tz,
    )

    # 5) store + complete
    reporter.report(*STORING)
    ref = deps.store.put(compiled.payload, compiled.content_type)
    digests = compute_digests(
        priced,
        {
            "report_type": row.report_type,
            "fiscal_year": row.fiscal_year,
            "lot_method": row.lot_method,
            "fiscal_timezone": settings.fiscal_timezone,
            "excess_policy": settings.excess_disposal_policy,
            "price_overrides": row.price_overrides or {},
        },
        result.disposals,
        compiled.totals,
    )
    compiled.report["filename"] = compiled.filename
    if not sm.complete(
        db,
        request_id,
        attempt,
        report=compiled.report,
        artifact_ref=ref,
        content_type=compiled.content_type,
        totals=compiled.totals,
        warnings=warnings,
        input_hash=digests["input_hash"],
        output_hash=digests["output_hash"],
    ):
        raise AttemptSuperseded(detail=f"{request_id} attempt {attempt}")
