from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable

from sqlalchemy.orm import Session

from tarot_engine.core.errors import get_error_message
from tarot_engine.models.reading import Reading, ReadingStatus
from tarot_engine.schemas.reading import ReadingStatusResponse
from tarot_engine.services.progress import PROGRESS_MILESTONES, ProgressBroker, ProgressEvent, format_sse
from tarot_engine.services.reading_status import count_pending_readings, get_reading_by_id, load_answer

logger = logging.getLogger(__name__)


def get_estimated_seconds(db: Session, base_s: int, per_job_s: int) -> int:
    """Advisory only: a fixed base plus a per-job delay for the pending queue depth."""
    return int(base_s + count_pending_readings(db) * per_job_s)


def build_status_response(db: Session, reading: Reading, *, base_s: int, per_job_s: int) -> ReadingStatusResponse:
    estimate = None
    if reading.status in (ReadingStatus.PENDING, ReadingStatus.PROCESSING):
        estimate = get_estimated_seconds(db, base_s, per_job_s)
    answer = load_answer(reading) if reading.status == ReadingStatus.COMPLETED else None
    return ReadingStatusResponse(
        reading_id=reading.id,
        status=reading.status,
        question=reading.question,
        processing_started_at=reading.processing_started_at,
        processing_completed_at=reading.processing_completed_at,
        error_message=reading.error_message,
        error_code=reading.error_code,
        answer=answer,
        estimated_seconds_remaining=estimate,
        created_at=reading.created_at,
    )


def _progress_record(event: ProgressEvent) -> str:
    return format_sse("progress", event.to_payload())


async def stream_reading_events(
    session_factory: Callable[[], Session],
    broker: ProgressBroker,
    reading_id: str,
    *,
    poll_interval_s: float = 1.0,
    max_duration_s: float = 300.0,
    locale: str = "th",
) -> AsyncIterator[str]:
    """Yield SSE records for one reading until it is terminal.

    Progress comes from the in-process broker and is only forwarded when its
    percent moves forward, so a redelivered job never makes the bar go back.
    The database row decides when the stream ends.
    """
    queue = broker.subscribe(reading_id)
    last_percent = -1
    deadline = time.monotonic() + max_duration_s
    try:
        while True:
            while not queue.empty():
                event = queue.get_nowait()
                if event.percent > last_percent:
                    last_percent = event.percent
                    yield _progress_record(event)

            db = session_factory()
            try:
                reading = get_reading_by_id(db, reading_id)
                status = reading.status if reading is not None else None
                if status == ReadingStatus.COMPLETED:
                    answer = load_answer(reading)
                    payload = {
                        "reading_id": reading.id,
                        "answer": answer.model_dump(mode="json") if answer is not None else None,
                    }
                elif status == ReadingStatus.FAILED:
                    payload = {
                        "message": reading.error_message or get_error_message("INTERNAL_ERROR", locale),
                        "code": reading.error_code or "INTERNAL_ERROR",
                    }
                else:
                    payload = None
            finally:
                db.close()

            if status is None:
                yield format_sse("error", {"message": get_error_message("NOT_FOUND", locale), "code": "NOT_FOUND"})
                return
            if status == ReadingStatus.COMPLETED:
                if last_percent < PROGRESS_MILESTONES["completed"]:
                    yield _progress_record(ProgressEvent.for_step("completed"))
                yield format_sse("reading", payload)
                yield format_sse("complete", {"reading_id": reading_id})
                return
            if status == ReadingStatus.FAILED:
                yield format_sse("error", payload)
                return

            if time.monotonic() >= deadline:
                logger.info("status.stream_timeout reading_id=%s", reading_id)
                yield format_sse(
                    "error",
                    {"message": get_error_message("STREAM_TIMEOUT", locale), "code": "STREAM_TIMEOUT"},
                )
                return

            try:
                event = await asyncio.wait_for(queue.get(), timeout=poll_interval_s)
            except asyncio.TimeoutError:
                continue
            if event.percent > last_percent:
                last_percent = event.percent
                yield _progress_record(event)
    finally:
        broker.unsubscribe(reading_id, queue)
