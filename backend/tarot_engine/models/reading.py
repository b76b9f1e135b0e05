import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, String, Text
from sqlalchemy.sql import func

from tarot_engine.core.database import Base


class ReadingStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({ReadingStatus.COMPLETED, ReadingStatus.FAILED})


def new_reading_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reading(Base):
    __tablename__ = "readings"

    id = Column(String, primary_key=True, index=True, default=new_reading_id)
    user_id = Column(String, index=True, nullable=False)
    question = Column(Text, nullable=False)
    type = Column(String, default="tarot", nullable=False)
    status = Column(Enum(ReadingStatus), default=ReadingStatus.PENDING, index=True, nullable=False)

    # ReadingAnswer payload, see tarot_engine.schemas.reading
    answer = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)

    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processing_completed_at = Column(DateTime(timezone=True), nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    is_reviewed = Column(Boolean, default=False, nullable=False)

    # python-side default keeps sub-second FIFO order on SQLite
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
