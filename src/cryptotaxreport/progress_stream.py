# progress_stream.py
"""
Server-Sent Events for one report request.

The generator polls the persisted record (the only thing it shares with the
generation) and yields `data: {json}\\n\\n` frames:

  {"type": "progress", "status", "progress", "message"}   whenever one changes
  {"type": "complete", "artifactRef", "totals"}            terminal
  {"type": "error", "code", "message"}                     terminal

After a terminal frame the stream ends. A client disconnect ends the loop
without touching the generation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from starlette.concurrency import run_in_threadpool

from .errors import NotFound
from .models import ReportStatus

logger = logging.getLogger(__name__)

Snapshot = Optional[Dict[str, Any]]


def sse_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


async def stream_progress(
    request_id: str,
    load: Callable[[str], Snapshot],
    poll_interval: float = 1.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """
    `load(request_id)` is a blocking read (run in the threadpool) returning the
    state-machine snapshot or None when the id is unknown.
    """
    last = None
    while True:
        if is_disconnected is not None and await is_disconnected():
            logger.debug("Progress watcher for %s disconnected", request_id)
            return

        snap = await run_in_threadpool(load, request_id)
        if snap is None:
            missing = NotFound()
            yield sse_event({"type": "error", "code": missing.code, "message": missing.message})
            return

        key = (snap["status"], snap["progress"], snap["message"])
        if key != last:
            last = key
            yield sse_event({
                "type": "progress",
                "status": snap["status"],
                "progress": snap["progress"],
                "message": snap["message"],
            })

        if snap["status"] == ReportStatus.COMPLETED.value:
            yield sse_event({
                "type": "complete",
                "artifactRef": snap["artifact_ref"],
                "totals": snap["totals"],
            })
            return
        if snap["status"] == ReportStatus.ERROR.value:
            yield sse_event({
                "type": "error",
                "code": snap["error_code"],
                "message": snap["error_message"],
            })
            return

        await asyncio.sleep(poll_interval)
