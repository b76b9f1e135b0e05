from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from tarot_engine.models.reading import Reading, ReadingStatus, new_reading_id
from tarot_engine.schemas.reading import ReadingAnswer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlreadyClaimed:
    reading_id: str
    # None when the reading does not exist (or is soft-deleted)
    status: ReadingStatus | None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_pending_reading(
    db: Session,
    user_id: str,
    question: str,
    reading_type: str = "tarot",
    *,
    reading_id: str | None = None,
    commit: bool = True,
) -> Reading:
    reading = Reading(
        id=reading_id or new_reading_id(),
        user_id=user_id,
        question=question,
        type=reading_type,
        status=ReadingStatus.PENDING,
        is_deleted=False,
    )
    db.add(reading)
    db.flush()
    if commit:
        db.commit()
    logger.info("reading.created reading_id=%s user_id=%s", reading.id, user_id)
    return reading


def get_reading_by_id(db: Session, reading_id: str, *, include_deleted: bool = False) -> Reading | None:
    query = db.query(Reading).filter(Reading.id == reading_id)
    if not include_deleted:
        query = query.filter(Reading.is_deleted.is_(False))
    return query.populate_existing().first()


def claim_reading(db: Session, reading_id: str) -> Reading | AlreadyClaimed:
    """PENDING -> PROCESSING as one conditional UPDATE.

    Whoever's UPDATE matches the row owns the reading; everyone else gets
    ``AlreadyClaimed`` and writes nothing.
    """
    matched = (
        db.query(Reading)
        .filter(
            Reading.id == reading_id,
            Reading.status == ReadingStatus.PENDING,
            Reading.is_deleted.is_(False),
        )
        .update(
            {
                Reading.status: ReadingStatus.PROCESSING,
                Reading.processing_started_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()

    reading = get_reading_by_id(db, reading_id)
    if matched != 1 or reading is None:
        status = reading.status if reading is not None else None
        logger.info("reading.claim_skipped reading_id=%s status=%s", reading_id, status)
        return AlreadyClaimed(reading_id=reading_id, status=status)

    logger.info("reading.claimed reading_id=%s", reading_id)
    return reading


def mark_reading_completed(
    db: Session,
    reading_id: str,
    answer: ReadingAnswer,
    *,
    claimed_at: datetime | None = None,
    commit: bool = True,
) -> bool:
    """PROCESSING -> COMPLETED. Returns False (and writes nothing) otherwise."""
    query = db.query(Reading).filter(Reading.id == reading_id, Reading.status == ReadingStatus.PROCESSING)
    if claimed_at is not None:
        query = query.filter(Reading.processing_started_at == claimed_at)
    matched = query.update(
        {
            Reading.status: ReadingStatus.COMPLETED,
            Reading.answer: answer.model_dump(mode="json"),
            Reading.processing_completed_at: utcnow(),
            Reading.error_message: None,
            Reading.error_code: None,
        },
        synchronize_session=False,
    )
    if commit:
        db.commit()
    if matched != 1:
        logger.warning("reading.complete_noop reading_id=%s", reading_id)
        return False
    logger.info("reading.completed reading_id=%s", reading_id)
    return True


def mark_reading_failed(
    db: Session,
    reading_id: str,
    error_message: str,
    *,
    error_code: str | None = None,
    claimed_at: datetime | None = None,
    pending_only: bool = False,
    commit: bool = True,
) -> bool:
    """PENDING|PROCESSING -> FAILED. Terminal readings are left untouched.

    ``claimed_at`` narrows the match to the PROCESSING row stamped by that
    claim; ``pending_only`` to a reading nobody has claimed yet.
    """
    query = db.query(Reading).filter(Reading.id == reading_id)
    if claimed_at is not None:
        query = query.filter(
            Reading.status == ReadingStatus.PROCESSING,
            Reading.processing_started_at == claimed_at,
        )
    elif pending_only:
        query = query.filter(Reading.status == ReadingStatus.PENDING)
    else:
        query = query.filter(Reading.status.in_([ReadingStatus.PENDING, ReadingStatus.PROCESSING]))
    matched = query.update(
        {
            Reading.status: ReadingStatus.FAILED,
            Reading.error_message: error_message,
            Reading.error_code: error_code,
            Reading.processing_completed_at: utcnow(),
        },
        synchronize_session=False,
    )
    if commit:
        db.commit()
    if matched != 1:
        logger.warning("reading.fail_noop reading_id=%s", reading_id)
        return False
    logger.info("reading.failed reading_id=%s code=%s", reading_id, error_code)
    return True


def reset_reading_to_pending(
    db: Session,
    reading_id: str,
    *,
    claimed_at: datetime | None = None,
    commit: bool = True,
) -> bool:
    """PROCESSING -> PENDING, only for redelivering a stalled or interrupted job.

    With ``claimed_at`` the row is reset only while it still carries that
    claim's stamp, so a worker never hands back a reading someone else owns.
    """
    query = db.query(Reading).filter(Reading.id == reading_id, Reading.status == ReadingStatus.PROCESSING)
    if claimed_at is not None:
        query = query.filter(Reading.processing_started_at == claimed_at)
    matched = query.update(
        {
            Reading.status: ReadingStatus.PENDING,
            Reading.processing_started_at: None,
        },
        synchronize_session=False,
    )
    if commit:
        db.commit()
    if matched == 1:
        logger.info("reading.reset_to_pending reading_id=%s", reading_id)
    return matched == 1


def get_pending_readings(db: Session, limit: int | None = None) -> list[Reading]:
    query = (
        db.query(Reading)
        .filter(Reading.status == ReadingStatus.PENDING, Reading.is_deleted.is_(False))
        .order_by(Reading.created_at.asc(), Reading.id.asc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


def count_pending_readings(db: Session) -> int:
    return (
        db.query(func.count(Reading.id))
        .filter(Reading.status == ReadingStatus.PENDING, Reading.is_deleted.is_(False))
        .scalar()
        or 0
    )


def get_processing_stats(db: Session) -> dict[str, int]:
    rows = (
        db.query(Reading.status, func.count(Reading.id))
        .filter(Reading.is_deleted.is_(False))
        .group_by(Reading.status)
        .all()
    )
    counts = {status.value.lower(): 0 for status in ReadingStatus}
    for status, count in rows:
        counts[ReadingStatus(status).value.lower()] = int(count or 0)
    counts["total"] = sum(counts.values())
    return counts


def find_stuck_readings(db: Session, older_than: datetime, limit: int = 50) -> list[Reading]:
    return (
        db.query(Reading)
        .filter(
            Reading.status == ReadingStatus.PROCESSING,
            Reading.processing_started_at.isnot(None),
            Reading.processing_started_at < older_than,
        )
        .order_by(Reading.processing_started_at.asc())
        .limit(limit)
        .all()
    )


def soft_delete_reading(db: Session, reading_id: str, user_id: str) -> bool:
    matched = (
        db.query(Reading)
        .filter(Reading.id == reading_id, Reading.user_id == user_id, Reading.is_deleted.is_(False))
        .update({Reading.is_deleted: True}, synchronize_session=False)
    )
    db.commit()
    return matched == 1


def cleanup_old_failed_readings(db: Session, older_than_days: int = 7) -> int:
    cutoff = utcnow() - timedelta(days=older_than_days)
    matched = (
        db.query(Reading)
        .filter(
            Reading.status == ReadingStatus.FAILED,
            Reading.is_deleted.is_(False),
            Reading.processing_completed_at < cutoff,
        )
        .update({Reading.is_deleted: True}, synchronize_session=False)
    )
    db.commit()
    logger.info("reading.cleanup_failed soft_deleted=%s older_than_days=%s", matched, older_than_days)
    return int(matched or 0)


def load_answer(reading: Reading) -> ReadingAnswer | None:
    """Validate the stored payload on the way out; a row that does not match
    the current schema is reported as having no answer."""
    if reading.answer is None:
        return None
    try:
        return ReadingAnswer.model_validate(reading.answer)
    except PydanticValidationError:
        logger.exception("reading.answer_invalid reading_id=%s", reading.id)
        return None
