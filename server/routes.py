"""FastAPI route definitions for the operator API.

Endpoints:
- GET  /health                 : Liveness + client readiness
- GET  /api/status             : Quota, protection and batch snapshot
- POST /api/add-members        : Admit a batch and run it in the background (?wait=true to block)
- POST /api/resume-batch       : Resume the persisted batch
- POST /api/reset-protection   : Operator override of protection mode
- GET  /api/failed-numbers     : Failure bookkeeping
- POST /api/clear-failed-numbers
- POST /api/config             : Partial update of the safety configuration
- GET  /api/logs, /api/log-dates : Daily activity logs
- POST /api/upload-csv         : Extract phone numbers from a CSV upload
- GET  /metrics                : Prometheus metrics
- GET  /stream                 : Server-Sent Events
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from adder.activity_log import list_log_dates, parse_log_date, read_log
from adder.bootstrap import AppContext, get_context
from adder.csv_import import CsvImportError, parse_phone_csv
from adder.errors import AdmissionError, AlreadyRunningError
from adder.processor import BatchResult
from adder.state import Batch
from domain.models import (
    AddMembersRequest,
    ConfigUpdateRequest,
    CsvUploadResponse,
    FailedNumbersResponse,
    LogResponse,
    StatusModel,
)
from .events import sse_event_iter

router = APIRouter()
logger = structlog.get_logger(__name__)

# Admission error code -> HTTP status
_ADMISSION_STATUS = {
    "already_running": status.HTTP_409_CONFLICT,
    "protection_active": status.HTTP_429_TOO_MANY_REQUESTS,
    "quota_exceeded": status.HTTP_429_TOO_MANY_REQUESTS,
    "client_not_ready": status.HTTP_503_SERVICE_UNAVAILABLE,
    "invalid_target": status.HTTP_400_BAD_REQUEST,
    "empty_batch": status.HTTP_400_BAD_REQUEST,
    "no_batch": status.HTTP_404_NOT_FOUND,
}

_batch_task: Optional[asyncio.Task] = None


async def get_app_context() -> AppContext:
    return await get_context()


# ------------------------------------------------------------
# Background batch task
# ------------------------------------------------------------
def current_batch_task() -> Optional[asyncio.Task]:
    return _batch_task


async def cancel_batch_task() -> None:
    """Cancel a running batch (shutdown). The cursor is already persisted."""
    global _batch_task
    task = _batch_task
    _batch_task = None
    if task and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def _spawn(ctx: AppContext, batch: Batch) -> asyncio.Task:
    global _batch_task

    async def _runner() -> BatchResult:
        return await ctx.processor.run(batch)

    def _done(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("batch_task_cancelled", group_id=batch.group_id)
        elif task.exception() is not None:
            logger.error("batch_task_crashed", group_id=batch.group_id, error=str(task.exception()))

    _batch_task = asyncio.create_task(_runner())
    _batch_task.add_done_callback(_done)
    return _batch_task


def _admission_response(ctx: AppContext, exc: AdmissionError) -> JSONResponse:
    ctx.processor.note_rejection(exc)
    return JSONResponse(
        status_code=_ADMISSION_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content=BatchResult.rejected(exc).to_dict(),
    )


async def _start(ctx: AppContext, batch: Batch, wait: bool) -> JSONResponse:
    task = _spawn(ctx, batch)
    if wait:
        result = await task
        return JSONResponse(content=result.to_dict())
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "success": True,
            "status": "started",
            "message": f"Started adding {batch.remaining} members",
            "group_id": batch.group_id,
            "batch": ctx.processor.progress(batch).to_dict(),
        },
    )


# ------------------------------------------------------------
# Health & status
# ------------------------------------------------------------
@router.get("/health")
async def health(ctx: AppContext = Depends(get_app_context)):
    return {
        "status": "ok",
        "client_ready": ctx.monitor.is_ready,
        "client_state": str(ctx.monitor.state),
        "processing": ctx.processor.state.is_processing,
    }


@router.get("/api/status", response_model=StatusModel)
async def api_status(ctx: AppContext = Depends(get_app_context)):
    return ctx.processor.get_status()


# ------------------------------------------------------------
# Batches
# ------------------------------------------------------------
@router.post("/api/add-members")
async def api_add_members(
    body: AddMembersRequest,
    wait: bool = Query(False, description="Block until the batch finishes"),
    ctx: AppContext = Depends(get_app_context),
):
    if not body.numbers:
        raise HTTPException(status_code=400, detail="No numbers provided")
    invalid = body.invalid_numbers()
    if invalid:
        raise HTTPException(
            status_code=400,
            detail={"message": "Numbers must contain digits only", "invalid": invalid[:20]},
        )
    try:
        batch = await ctx.processor.admit(body.group_id, body.numbers, body.message)
    except AdmissionError as exc:
        return _admission_response(ctx, exc)
    return await _start(ctx, batch, wait)


@router.post("/api/resume-batch")
async def api_resume_batch(
    wait: bool = Query(False),
    ctx: AppContext = Depends(get_app_context),
):
    try:
        batch = await ctx.processor.admit_resume()
    except AdmissionError as exc:
        return _admission_response(ctx, exc)
    return await _start(ctx, batch, wait)


@router.post("/api/reset-protection", response_model=StatusModel)
async def api_reset_protection(ctx: AppContext = Depends(get_app_context)):
    return ctx.processor.reset_protection()


# ------------------------------------------------------------
# Failures
# ------------------------------------------------------------
@router.get("/api/failed-numbers", response_model=FailedNumbersResponse)
async def api_failed_numbers(ctx: AppContext = Depends(get_app_context)):
    numbers = ctx.processor.list_failures()
    return {"count": len(numbers), "numbers": numbers}


@router.post("/api/clear-failed-numbers")
async def api_clear_failed_numbers(ctx: AppContext = Depends(get_app_context)):
    ctx.processor.clear_failures()
    return {"success": True}


# ------------------------------------------------------------
# Configuration
# ------------------------------------------------------------
@router.post("/api/config")
async def api_update_config(body: ConfigUpdateRequest, ctx: AppContext = Depends(get_app_context)):
    try:
        config = ctx.processor.update_config(**body.changes())
    except AlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "config": config.to_dict()}


# ------------------------------------------------------------
# Activity logs
# ------------------------------------------------------------
@router.get("/api/logs", response_model=LogResponse)
async def api_logs(date: Optional[str] = Query(None), ctx: AppContext = Depends(get_app_context)):
    try:
        day = parse_log_date(date)
    except ValueError:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
    return {"date": day.isoformat(), "lines": read_log(ctx.settings.log_dir, day)}


@router.get("/api/log-dates")
async def api_log_dates(ctx: AppContext = Depends(get_app_context)):
    return {"dates": list_log_dates(ctx.settings.log_dir)}


# ------------------------------------------------------------
# CSV upload
# ------------------------------------------------------------
@router.post("/api/upload-csv", response_model=CsvUploadResponse)
async def api_upload_csv(file: UploadFile = File(...)):
    data = await file.read()
    try:
        numbers = parse_phone_csv(data)
    except CsvImportError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not numbers:
        raise HTTPException(status_code=400, detail="No phone numbers found in CSV")
    logger.info("csv_uploaded", filename=file.filename, count=len(numbers))
    return {"count": len(numbers), "numbers": numbers}


# ------------------------------------------------------------
# Metrics & stream
# ------------------------------------------------------------
@router.get("/metrics")
async def metrics(ctx: AppContext = Depends(get_app_context)):
    if not ctx.settings.enable_metrics:
        return Response(status_code=404)
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@router.get("/stream")
async def stream():
    """SSE stream of engine events.

    Client JS example:
        const es = new EventSource('/stream');
        es.onmessage = ev => { const payload = JSON.parse(ev.data); console.log(payload.type); };
    """
    return StreamingResponse(sse_event_iter(), media_type="text/event-stream")


__all__ = ["router", "get_app_context", "current_batch_task", "cancel_batch_task"]
