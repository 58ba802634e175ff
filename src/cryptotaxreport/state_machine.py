# state_machine.py
"""
Lifecycle of a ReportRequest row:

    draft ──generate──▶ processing ──▶ completed
                 ▲           │
                 └── error ◀─┘        (retry: error -> processing, attempt += 1)

Every transition is a single conditional UPDATE whose WHERE clause encodes the
allowed source states (compare-and-set). A transition "wins" iff exactly one
row changed, so two concurrent triggers can never both enter `processing`.
Progress and terminal writes also carry the attempt number: writes from a
superseded attempt (e.g. after the watchdog expired it) change nothing.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from .db import Database
from .errors import GenerationConflict, GenerationTimeout, InvalidTransition, NotFound
from .models import ReportRequest, ReportStatus, utcnow
from .schemas import ReportRequestCreate, ReportRequestUpdate, ReportTotals

logger = logging.getLogger(__name__)

STARTABLE = (ReportStatus.DRAFT.value, ReportStatus.ERROR.value)
EDITABLE = STARTABLE
PROCESSING = ReportStatus.PROCESSING.value

QUEUED_MESSAGE = "Queued"
COMPLETED_MESSAGE = "Completed"


def _overrides_to_json(overrides: Optional[Dict[str, Decimal]]) -> Optional[Dict[str, str]]:
    if overrides is None:
        return None
    return {k: format(v, "f") for k, v in overrides.items()}


def _execute(s: Session, stmt):
    # rows are re-read after every transition, no in-session sync needed
    return s.execute(stmt, execution_options={"synchronize_session": False})


def _load(s: Session, request_id: str) -> ReportRequest:
    row = s.get(ReportRequest, request_id)
    if row is None:
        raise NotFound(detail=f"report_request id={request_id}")
    return row


# ---------- configuration (draft / error only) ----------

def create_request(db: Database, data: ReportRequestCreate, default_lot_method: str = "FIFO") -> ReportRequest:
    """`default_lot_method` applies when the request doesn't name one."""
    taxpayer = data.taxpayer
    row = ReportRequest(
        data_source=data.source.data_source,
        source_data=data.source.model_dump(mode="json"),
        report_type=data.report_type,
        fiscal_year=data.fiscal_year,
        file_format=data.file_format,
        lot_method=data.lot_method or default_lot_method,
        taxpayer_nif=taxpayer.nif if taxpayer else None,
        taxpayer_name=taxpayer.name if taxpayer else None,
        taxpayer_surname=taxpayer.surname if taxpayer else None,
        price_overrides=_overrides_to_json(data.price_overrides),
        status=ReportStatus.DRAFT.value,
        progress=0,
        attempt=0,
    )
    with db.session_scope() as s:
        s.add(row)
        s.flush()
        logger.info("Created report request %s (%s, %s)", row.id, row.report_type, row.fiscal_year)
    return row


def get_request(db: Database, request_id: str) -> ReportRequest:
    with db.session_scope() as s:
        return _load(s, request_id)


def list_requests(db: Database, limit: int = 50, status: Optional[str] = None) -> List[ReportRequest]:
    stmt = select(ReportRequest).order_by(ReportRequest.created_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(ReportRequest.status == status)
    with db.session_scope() as s:
        return list(s.scalars(stmt).all())


def update_config(db: Database, request_id: str, patch: ReportRequestUpdate) -> ReportRequest:
    """Apply a partial configuration update; only allowed while draft or error."""
    values: Dict[str, Any] = {}
    fields = patch.model_fields_set
    if "source" in fields and patch.source is not None:
        values["data_source"] = patch.source.data_source
        values["source_data"] = patch.source.model_dump(mode="json")
    for name in ("report_type", "fiscal_year", "file_format", "lot_method"):
        if name in fields and getattr(patch, name) is not None:
            values[name] = getattr(patch, name)
    if "taxpayer" in fields:
        tp = patch.taxpayer
        values["taxpayer_nif"] = tp.nif if tp else None
        values["taxpayer_name"] = tp.name if tp else None
        values["taxpayer_surname"] = tp.surname if tp else None
    if "price_overrides" in fields:
        values["price_overrides"] = _overrides_to_json(patch.price_overrides)

    with db.session_scope() as s:
        if values:
            values["updated_at"] = utcnow()
            res = _execute(
                s,
                update(ReportRequest)
                .where(ReportRequest.id == request_id, ReportRequest.status.in_(EDITABLE))
                .values(**values)
            )
            if res.rowcount != 1:
                row = _load(s, request_id)
                raise InvalidTransition(
                    f"Configuration can only be changed while the request is draft or error (it is {row.status})."
                )
        row = _load(s, request_id)
        return row


def delete_request(db: Database, request_id: str) -> None:
    with db.session_scope() as s:
        res = _execute(
            s,
            delete(ReportRequest).where(ReportRequest.id == request_id, ReportRequest.status != PROCESSING)
        )
        if res.rowcount != 1:
            _load(s, request_id)
            raise InvalidTransition("A report request cannot be deleted while it is processing.")
    logger.info("Deleted report request %s", request_id)


# ---------- generation lifecycle ----------

def begin_generation(db: Database, request_id: str) -> int:
    """
    draft|error -> processing. Returns the new attempt number.
    Raises GenerationConflict if another generation already holds the row.
    """
    now = utcnow()
    with db.session_scope() as s:
        res = _execute(
            s,
            update(ReportRequest)
            .where(ReportRequest.id == request_id, ReportRequest.status.in_(STARTABLE))
            .values(
                status=PROCESSING,
                attempt=ReportRequest.attempt + 1,
                progress=0,
                progress_message=QUEUED_MESSAGE,
                error_code=None,
                error_message=None,
                started_at=now,
                finished_at=None,
                updated_at=now,
            )
        )
        if res.rowcount != 1:
            row = _load(s, request_id)
            raise GenerationConflict(
                f"Report request is {row.status}; a new generation can only start from draft or error."
            )
        attempt = s.scalar(select(ReportRequest.attempt).where(ReportRequest.id == request_id))
    logger.info("Report request %s entered processing (attempt %s)", request_id, attempt)
    return int(attempt)


def update_progress(db: Database, request_id: str, attempt: int, progress: int, message: str) -> bool:
    """
    Monotonic progress write for the current attempt. Returns False when the
    write was refused (stale attempt, request no longer processing, or the
    value would move backwards).
    """
    progress = max(0, min(100, int(progress)))
    with db.session_scope() as s:
        res = _execute(
            s,
            update(ReportRequest)
            .where(
                ReportRequest.id == request_id,
                ReportRequest.status == PROCESSING,
                ReportRequest.attempt == attempt,
                ReportRequest.progress <= progress,
            )
            .values(progress=progress, progress_message=message, updated_at=utcnow())
        )
        return res.rowcount == 1


def complete(
    db: Database,
    request_id: str,
    attempt: int,
    *,
    report: Dict[str, Any],
    artifact_ref: str,
    content_type: str,
    totals: ReportTotals,
    warnings: List[Dict[str, Any]],
    input_hash: Optional[str] = None,
    output_hash: Optional[str] = None,
) -> bool:
    now = utcnow()
    with db.session_scope() as s:
        res = _execute(
            s,
            update(ReportRequest)
            .where(
                ReportRequest.id == request_id,
                ReportRequest.status == PROCESSING,
                ReportRequest.attempt == attempt,
            )
            .values(
                status=ReportStatus.COMPLETED.value,
                progress=100,
                progress_message=COMPLETED_MESSAGE,
                generated_report=report,
                artifact_ref=artifact_ref,
                artifact_content_type=content_type,
                total_transactions=totals.total_transactions,
                total_gains=totals.total_gains,
                total_losses=totals.total_losses,
                net_result=totals.net_result,
                warnings=warnings,
                input_hash=input_hash,
                output_hash=output_hash,
                finished_at=now,
                updated_at=now,
            )
        )
        ok = res.rowcount == 1
    if ok:
        logger.info("Report request %s completed (attempt %s)", request_id, attempt)
    else:
        logger.warning("Discarded completion of report request %s: attempt %s is no longer current", request_id, attempt)
    return ok


def fail(
    db: Database,
    request_id: str,
    attempt: int,
    code: str,
    message: str,
    warnings: Optional[List[Dict[str, Any]]] = None,
) -> bool:
    now = utcnow()
    values: Dict[str, Any] = dict(
        status=ReportStatus.ERROR.value,
        error_code=code,
        error_message=message,
        progress_message=message,
        finished_at=now,
        updated_at=now,
    )
    if warnings is not None:
        values["warnings"] = warnings
    with db.session_scope() as s:
        res = _execute(
            s,
            update(ReportRequest)
            .where(
                ReportRequest.id == request_id,
                ReportRequest.status == PROCESSING,
                ReportRequest.attempt == attempt,
            )
            .values(**values)
        )
        ok = res.rowcount == 1
    if ok:
        logger.info("Report request %s failed with %s (attempt %s)", request_id, code, attempt)
    return ok


def expire_stale(db: Database, budget_seconds: float, now: Optional[datetime.datetime] = None) -> List[str]:
    """Move processing rows older than the time budget to error/TIMEOUT."""
    now = now or utcnow()
    cutoff = now - datetime.timedelta(seconds=budget_seconds)
    timeout = GenerationTimeout()
    expired: List[str] = []
    with db.session_scope() as s:
        ids = s.scalars(
            select(ReportRequest.id).where(
                ReportRequest.status == PROCESSING, ReportRequest.started_at < cutoff
            )
        ).all()
        for request_id in ids:
            res = _execute(
                s,
                update(ReportRequest)
                .where(
                    ReportRequest.id == request_id,
                    ReportRequest.status == PROCESSING,
                    ReportRequest.started_at < cutoff,
                )
                .values(
                    status=ReportStatus.ERROR.value,
                    error_code=timeout.code,
                    error_message=timeout.message,
                    progress_message=timeout.message,
                    finished_at=now,
                    updated_at=now,
                )
            )
            if res.rowcount == 1:
                expired.append(request_id)
    for request_id in expired:
        logger.warning("Report request %s exceeded the %ss generation budget", request_id, budget_seconds)
    return expired


def snapshot(db: Database, request_id: str) -> Optional[Dict[str, Any]]:
    """Fields the progress gateway needs, or None for an unknown id."""
    with db.session_scope() as s:
        row = s.get(ReportRequest, request_id)
        if row is None:
            return None
        return {
            "status": row.status,
            "progress": row.progress,
            "message": row.progress_message,
            "attempt": row.attempt,
            "artifact_ref": row.artifact_ref,
            "error_code": row.error_code,
            "error_message": row.error_message,
            "totals": ReportTotals(
                total_transactions=row.total_transactions or 0,
                total_gains=row.total_gains or Decimal("0"),
                total_losses=row.total_losses or Decimal("0"),
                net_result=row.net_result or Decimal("0"),
            ).model_dump(mode="json"),
        }
