from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from tarot_engine.models.reading import ReadingStatus


ANSWER_SCHEMA_VERSION = 1
LEDGER_METADATA_SCHEMA_VERSION = 1


class QuestionAnalysis(BaseModel):
    mood: str
    topic: str
    period: str


class CardReading(BaseModel):
    id: int
    name: str
    display_name: str
    arcana: str
    short_meaning: str
    keywords: List[str] = []
    image_url: Optional[str] = None
    position: int


class ReadingContent(BaseModel):
    """The part of the answer written by the text-generation provider."""

    header: str
    reading: str
    suggestions: List[str] = []
    next_questions: List[str] = []
    final: str
    end: str
    notice: str


READING_CONTENT_FIELDS = ["header", "reading", "suggestions", "next_questions", "final", "end", "notice"]


class ReadingAnswer(BaseModel):
    kind: Literal["tarot_reading"] = "tarot_reading"
    schema_version: Literal[1] = ANSWER_SCHEMA_VERSION
    question_analysis: QuestionAnalysis
    cards: List[CardReading]
    reading: ReadingContent
    generation_attempts: int = 1
    created_at: datetime


# Ledger metadata, one tagged variant per event type

class SpendMetadata(BaseModel):
    kind: Literal["reading_spend"] = "reading_spend"
    schema_version: Literal[1] = LEDGER_METADATA_SCHEMA_VERSION
    reading_id: str
    reason: str = "Tarot reading"
    free_point_used: int
    stars_used: int
    question_length: int = 0


class RefundMetadata(BaseModel):
    kind: Literal["reading_refund"] = "reading_refund"
    schema_version: Literal[1] = LEDGER_METADATA_SCHEMA_VERSION
    reading_id: str
    original_transaction_id: str
    reason: str
    free_point_refunded: int
    stars_refunded: int


class RewardMetadata(BaseModel):
    kind: Literal["reading_reward"] = "reading_reward"
    schema_version: Literal[1] = LEDGER_METADATA_SCHEMA_VERSION
    reading_id: str
    reward_name: str


LedgerMetadata = Annotated[Union[SpendMetadata, RefundMetadata, RewardMetadata], Field(discriminator="kind")]
_ledger_metadata_adapter: TypeAdapter = TypeAdapter(LedgerMetadata)


def parse_ledger_metadata(raw: Any) -> Union[SpendMetadata, RefundMetadata, RewardMetadata]:
    return _ledger_metadata_adapter.validate_python(raw)


# API payloads

class ReadingSubmit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    type: str = "tarot"
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    # client-chosen idempotency key; a retried submit with the same id is not charged twice
    reading_id: Optional[str] = Field(default=None, alias="readingId", max_length=64)


class ReadingSubmissionResponse(BaseModel):
    reading_id: str
    status: ReadingStatus
    estimated_seconds_remaining: int
    confirmation_url: str


class ReadingStatusResponse(BaseModel):
    reading_id: str
    status: ReadingStatus
    question: str
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    answer: Optional[ReadingAnswer] = None
    estimated_seconds_remaining: Optional[int] = None
    created_at: Optional[datetime] = None


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_size: Optional[int] = Field(default=None, alias="batchSize", ge=1, le=100)
    reading_id: Optional[str] = Field(default=None, alias="readingId")


class ProcessResponse(BaseModel):
    processed: int
    successful: int
    failed: int
    skipped: int = 0
    recovered: int = 0


class ProcessOneResponse(BaseModel):
    success: bool
    reading_id: str
    status: str
    message: str


class ReadingStatsResponse(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    total: int
