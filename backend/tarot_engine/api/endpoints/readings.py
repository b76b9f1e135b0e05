from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from tarot_engine.core.database import get_db
from tarot_engine.core.errors import NotFoundError, PersistenceError, ValidationError, get_error_message
from tarot_engine.core.security import CurrentUser, get_current_user, get_settings, require_cron_secret
from tarot_engine.schemas.reading import (
    ProcessOneResponse,
    ProcessRequest,
    ProcessResponse,
    ReadingStatsResponse,
    ReadingStatusResponse,
    ReadingSubmissionResponse,
    ReadingSubmit,
)
from tarot_engine.services.credits_engine import InsufficientCredits
from tarot_engine.services.reading_status import get_processing_stats, get_reading_by_id, soft_delete_reading
from tarot_engine.services.status_reporter import build_status_response, stream_reading_events
from tarot_engine.services.submission import submit_reading
from tarot_engine.services.worker import BatchStats, ReadingProcessor


router = APIRouter()


def _locale(request: Request) -> str:
    accept = (request.headers.get("accept-language") or "").lower()
    if accept.startswith("en"):
        return "en"
    if accept.startswith("th"):
        return "th"
    return get_settings(request).default_locale


def _error_detail(code: str, locale: str) -> dict:
    return {"code": code, "message": get_error_message(code, locale)}


def _get_processor(request: Request) -> ReadingProcessor:
    processor = getattr(request.app.state, "processor", None)
    if processor is None or not processor.pool.running:
        raise HTTPException(status_code=503, detail="Reading worker is not running")
    return processor


def _batch_response(stats: BatchStats) -> ProcessResponse:
    return ProcessResponse(
        processed=stats.processed,
        successful=stats.successful,
        failed=stats.failed,
        skipped=stats.skipped,
        recovered=stats.recovered,
    )


@router.post("/readings/submit", response_model=ReadingSubmissionResponse, status_code=202)
async def submit(
    payload: ReadingSubmit,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    settings = get_settings(request)
    locale = _locale(request)
    processor = getattr(request.app.state, "processor", None)
    enqueue = None
    if processor is not None and processor.pool.running:
        enqueue = processor.pool.submit

    try:
        result = submit_reading(
            db,
            user_id=current_user.id,
            question=payload.question,
            reading_type=payload.type,
            reading_id=payload.reading_id,
            session_id=payload.session_id,
            min_length=settings.question_min_length,
            max_length=settings.question_max_length,
            enqueue=enqueue,
            estimate_base_s=settings.estimate_base_s,
            estimate_per_job_s=settings.estimate_per_job_s,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_error_detail(exc.code, locale))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=_error_detail(exc.code, locale))
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=_error_detail(exc.code, locale))

    if isinstance(result, InsufficientCredits):
        detail = _error_detail("INSUFFICIENT_CREDITS", locale)
        detail.update({"required": result.required, "available": result.available})
        raise HTTPException(status_code=402, detail=detail)

    return ReadingSubmissionResponse(
        reading_id=result.reading_id,
        status=result.status,
        estimated_seconds_remaining=result.estimated_seconds_remaining,
        confirmation_url=f"/api/readings/status/{result.reading_id}",
    )


@router.get("/readings/process", response_model=ProcessResponse, dependencies=[Depends(require_cron_secret)])
async def process_cron(request: Request):
    processor = _get_processor(request)
    stats = await processor.process_pending()
    return _batch_response(stats)


@router.post("/readings/process", dependencies=[Depends(require_cron_secret)])
async def process_manual(request: Request, payload: ProcessRequest | None = Body(default=None)):
    processor = _get_processor(request)
    payload = payload or ProcessRequest()
    if payload.reading_id:
        result = await processor.process_one(payload.reading_id)
        message = result.error.message if result.error is not None else result.status
        return ProcessOneResponse(
            success=result.success,
            reading_id=result.reading_id,
            status=result.status,
            message=message,
        )
    stats = await processor.process_pending(payload.batch_size)
    return _batch_response(stats)


@router.get("/readings/stats", response_model=ReadingStatsResponse, dependencies=[Depends(require_cron_secret)])
async def stats(db: Session = Depends(get_db)):
    return ReadingStatsResponse(**get_processing_stats(db))


@router.get("/readings/status/{reading_id}", response_model=ReadingStatusResponse)
async def reading_status(
    reading_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    settings = get_settings(request)
    reading = get_reading_by_id(db, reading_id)
    if reading is None:
        raise HTTPException(status_code=404, detail=_error_detail("NOT_FOUND", _locale(request)))
    if reading.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return build_status_response(
        db,
        reading,
        base_s=settings.estimate_base_s,
        per_job_s=settings.estimate_per_job_s,
    )


@router.get("/readings/{reading_id}/events")
async def reading_events(
    reading_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    settings = get_settings(request)
    reading = get_reading_by_id(db, reading_id)
    if reading is None:
        raise HTTPException(status_code=404, detail=_error_detail("NOT_FOUND", _locale(request)))
    if reading.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")

    events = stream_reading_events(
        request.app.state.session_factory,
        request.app.state.broker,
        reading_id,
        poll_interval_s=settings.stream_poll_interval_s,
        max_duration_s=settings.stream_max_duration_s,
        locale=_locale(request),
    )
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/readings/{reading_id}", status_code=204)
async def delete_reading(
    reading_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    reading = get_reading_by_id(db, reading_id)
    if reading is None:
        raise HTTPException(status_code=404, detail=_error_detail("NOT_FOUND", _locale(request)))
    if reading.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    soft_delete_reading(db, reading_id, current_user.id)
    return Response(status_code=204)
