from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tarot_engine.core.errors import NotFoundError, PersistenceError, ValidationError
from tarot_engine.models.reading import Reading, ReadingStatus, new_reading_id
from tarot_engine.models.user import User
from tarot_engine.services.credits_engine import InsufficientCredits, deduct_reading_credit
from tarot_engine.services.question_filter import filter_question
from tarot_engine.services.reading_status import create_pending_reading, get_reading_by_id
from tarot_engine.services.status_reporter import get_estimated_seconds
from tarot_engine.services.worker import ReadingJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionAccepted:
    reading_id: str
    status: ReadingStatus
    estimated_seconds_remaining: int
    # True when the reading_id was already submitted and nothing new was charged
    replayed: bool = False


def submit_reading(
    db: Session,
    *,
    user_id: str,
    question: str,
    reading_type: str = "tarot",
    reading_id: str | None = None,
    session_id: str | None = None,
    min_length: int = 10,
    max_length: int = 180,
    enqueue: Callable[[ReadingJob], object] | None = None,
    estimate_base_s: int = 60,
    estimate_per_job_s: int = 30,
) -> SubmissionAccepted | InsufficientCredits:
    """Validate, charge and persist a reading, then hand it to the worker.

    Nothing is charged or stored when the question is rejected or the balance
    is short. The deduction and the PENDING row are committed together.
    """
    text = filter_question(question, min_length=min_length, max_length=max_length)

    if db.get(User, user_id) is None:
        raise NotFoundError(f"user not found: {user_id}")

    if reading_id:
        existing = get_reading_by_id(db, reading_id, include_deleted=True)
        if existing is not None:
            if existing.user_id != user_id:
                raise ValidationError("reading id belongs to another user", code="READING_ID_CONFLICT")
            logger.info("submission.replayed reading_id=%s user_id=%s", reading_id, user_id)
            return SubmissionAccepted(
                reading_id=existing.id,
                status=existing.status,
                estimated_seconds_remaining=get_estimated_seconds(db, estimate_base_s, estimate_per_job_s),
                replayed=True,
            )

    reading_id = reading_id or new_reading_id()
    deduction = deduct_reading_credit(db, user_id, reading_id, question_length=len(text), commit=False)
    if isinstance(deduction, InsufficientCredits):
        db.rollback()
        return deduction

    try:
        reading: Reading = create_pending_reading(db, user_id, text, reading_type, reading_id=reading_id, commit=False)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise PersistenceError(f"could not store reading {reading_id}") from exc

    logger.info(
        "submission.accepted reading_id=%s user_id=%s session_id=%s free_point=%s stars=%s",
        reading.id,
        user_id,
        session_id,
        deduction.spent_free_point,
        deduction.spent_stars,
    )
    if enqueue is not None:
        enqueue(ReadingJob(reading_id=reading.id, user_id=user_id, question=text, session_id=session_id))

    return SubmissionAccepted(
        reading_id=reading.id,
        status=ReadingStatus.PENDING,
        estimated_seconds_remaining=get_estimated_seconds(db, estimate_base_s, estimate_per_job_s),
    )
