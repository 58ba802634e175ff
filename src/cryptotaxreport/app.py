# app.py
"""
Main FastAPI application.

This file wires together:
- the report request lifecycle (state machine + background generation)
- the progress stream (Server-Sent Events)
- CSV preview and exchange connection checks
- the database handle and artifact store (one per app, on app.state)

Endpoints:
  GET    /health                          → liveness check
  GET    /version                         → app version metadata
  POST   /report-requests                 → create a draft
  GET    /report-requests                 → list (limit, status)
  GET    /report-requests/{id}            → read
  PATCH  /report-requests/{id}            → edit configuration (draft/error only)
  DELETE /report-requests/{id}            → delete (not while processing)
  POST   /report-requests/{id}/generate   → start a generation (202)
  GET    /report-requests/{id}/progress   → text/event-stream
  GET    /report-requests/{id}/download   → artifact bytes
  POST   /exchange/test-connection        → check exchange credentials
  POST   /upload/csv                      → parse CSV and PREVIEW (no DB writes)

  Command to start the server: uvicorn cryptotaxreport.app:app --reload
"""

import asyncio
import logging
from io import BytesIO
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from . import state_machine as sm
from .__about__ import __title__, __version__
from .artifacts import ArtifactStore
from .config import Settings, configure_logging, get_settings
from .connectors import parse_csv
from .connectors.exchange import ExchangeConnector
from .db import Database, create_database, get_db
from .errors import AuthenticationFailure, InvalidTransition, RateLimited, ReportGenerationError
from .models import ReportStatus
from .pipeline import PipelineDeps, run_generation
from .progress_stream import stream_progress
from .schemas import (
    ConnectionTestRequest,
    ConnectionTestResponse,
    CSVPreviewResponse,
    GenerateResponse,
    ReportRequestCreate,
    ReportRequestList,
    ReportRequestRead,
    ReportRequestUpdate,
    parse_source,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    deps: Optional[PipelineDeps] = None,
) -> FastAPI:
    """
    Build the application. Tests pass their own settings/db/deps; the module
    level `app` below uses the environment.
    """
    settings = settings or get_settings()
    app = FastAPI(title=__title__, version=__version__)
    app.state.settings = settings
    app.state.db = db
    app.state.store = deps.store if deps else ArtifactStore(settings.artifact_dir)
    app.state.deps = deps or PipelineDeps(settings=settings, store=app.state.store)
    app.state.watchdog = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @app.on_event("startup")
    async def on_startup() -> None:
        """
        Runs when the server starts.
        - Configures logging and opens the database (tables created idempotently).
        - Starts the watchdog that expires generations over the time budget.
        """
        configure_logging(settings.log_level)
        if app.state.db is None:
            app.state.db = create_database(settings.db_url)
        else:
            app.state.db.init_db()
        app.state.watchdog = asyncio.create_task(_watchdog(app))
        logger.info("%s %s started (db=%s)", __title__, __version__, settings.db_url)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        task = app.state.watchdog
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @app.exception_handler(ReportGenerationError)
    async def report_error_handler(request: Request, exc: ReportGenerationError) -> JSONResponse:
        if exc.detail:
            logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.detail)
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after:
            headers["Retry-After"] = str(int(exc.retry_after))
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    # -------------------------------------------------------------------------
    # Health + version endpoints (simple sanity checks)
    # -------------------------------------------------------------------------
    @app.get("/health")
    def health() -> Dict[str, str]:
        """Quick liveness check for monitoring or manual testing."""
        return {"status": "ok"}

    @app.get("/version")
    def version() -> Dict[str, str]:
        """Show the backend name and version (useful to confirm deployments)."""
        return {"name": __title__, "version": __version__}

    # -------------------------------------------------------------------------
    # Report requests
    # -------------------------------------------------------------------------
    @app.post("/report-requests", response_model=ReportRequestRead, status_code=201)
    def create_report_request(body: ReportRequestCreate, db: Database = Depends(get_db)) -> ReportRequestRead:
        return ReportRequestRead.from_row(sm.create_request(db, body, default_lot_method=settings.default_lot_method))

    @app.get("/report-requests", response_model=ReportRequestList)
    def list_report_requests(
        limit: int = Query(50, ge=1, le=500),
        status: Optional[ReportStatus] = None,
        db: Database = Depends(get_db),
    ) -> ReportRequestList:
        rows = sm.list_requests(db, limit=limit, status=status.value if status else None)
        return ReportRequestList(items=[ReportRequestRead.from_row(r) for r in rows])

    @app.get("/report-requests/{request_id}", response_model=ReportRequestRead)
    def read_report_request(request_id: str, db: Database = Depends(get_db)) -> ReportRequestRead:
        return ReportRequestRead.from_row(sm.get_request(db, request_id))

    @app.patch("/report-requests/{request_id}", response_model=ReportRequestRead)
    def update_report_request(
        request_id: str, body: ReportRequestUpdate, db: Database = Depends(get_db)
    ) -> ReportRequestRead:
        return ReportRequestRead.from_row(sm.update_config(db, request_id, body))

    @app.delete("/report-requests/{request_id}", status_code=204)
    def delete_report_request(request_id: str, db: Database = Depends(get_db)) -> Response:
        sm.delete_request(db, request_id)
        return Response(status_code=204)

    @app.post("/report-requests/{request_id}/generate", response_model=GenerateResponse, status_code=202)
    def generate_report(
        request_id: str, background_tasks: BackgroundTasks, db: Database = Depends(get_db)
    ) -> GenerateResponse:
        """
        Enter `processing` (compare-and-set) and hand the run to a background
        task. A second trigger while processing/completed gets 409.
        """
        row = sm.get_request(db, request_id)
        try:
            parse_source(row.source_data)
        except PydanticValidationError as ve:
            logger.warning("Report request %s has an invalid source: %s", request_id, ve)
            raise HTTPException(status_code=422, detail="The data source configuration is invalid.")
        attempt = sm.begin_generation(db, request_id)
        background_tasks.add_task(run_generation, db, request_id, attempt, app.state.deps)
        return GenerateResponse(id=request_id, status=ReportStatus.PROCESSING.value, attempt=attempt)

    @app.get("/report-requests/{request_id}/progress")
    async def report_progress(request_id: str, request: Request) -> StreamingResponse:
        db: Database = request.app.state.db
        events = stream_progress(
            request_id,
            lambda rid: sm.snapshot(db, rid),
            poll_interval=settings.poll_interval,
            is_disconnected=request.is_disconnected,
        )
        return StreamingResponse(
            events,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/report-requests/{request_id}/download")
    def download_report(request_id: str, db: Database = Depends(get_db)) -> StreamingResponse:
        row = sm.get_request(db, request_id)
        if row.status != ReportStatus.COMPLETED.value or not row.artifact_ref:
            raise InvalidTransition(f"The report is not available yet (status: {row.status}).")
        payload = app.state.store.read(row.artifact_ref)
        filename = (row.generated_report or {}).get("filename") or f"{row.report_type}_{row.fiscal_year}.{row.file_format}"
        return StreamingResponse(
            BytesIO(payload),
            media_type=row.artifact_content_type or "application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # -------------------------------------------------------------------------
    # Source helpers
    # -------------------------------------------------------------------------
    @app.post("/exchange/test-connection", response_model=ConnectionTestResponse)
    def test_exchange_connection(body: ConnectionTestRequest) -> ConnectionTestResponse:
        connector = ExchangeConnector(app.state.deps.http, settings)
        try:
            ok = connector.test_connection(body.platform, body.api_key, body.api_secret, body.passphrase)
        except AuthenticationFailure as e:
            return ConnectionTestResponse(platform=body.platform, ok=False, message=e.message)
        message = "Connection successful." if ok else "The exchange rejected the credentials or is unreachable."
        return ConnectionTestResponse(platform=body.platform, ok=ok, message=message)

    @app.post("/upload/csv", response_model=CSVPreviewResponse)
    async def upload_csv(file: UploadFile = File(...)) -> Dict[str, Any]:
        """
        Accept a CSV upload, parse & validate it, and return a PREVIEW (no DB writes).
        """
        filename = file.filename or ""
        if not filename.lower().endswith(".csv"):
            raise HTTPException(status_code=400, detail="Please upload a .csv file")

        data = await file.read()
        if len(data) == 0:
            raise HTTPException(status_code=400, detail="Empty file")

        valid_rows, errors = await run_in_threadpool(parse_csv, data, f"csv:upload:{filename}")
        return {
            "filename": filename,
            "total_valid": len(valid_rows),
            "total_errors": len(errors),
            "preview_first_5": valid_rows[:5],
            "errors": [e.to_dict() for e in errors[:5]],
        }

    return app


async def _watchdog(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    while True:
        await asyncio.sleep(settings.watchdog_interval)
        try:
            await run_in_threadpool(sm.expire_stale, app.state.db, settings.generation_timeout)
        except Exception:
            logger.exception("Watchdog pass failed")


app = create_app()
