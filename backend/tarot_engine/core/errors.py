from __future__ import annotations

from typing import Any


ERROR_MESSAGES: dict[str, dict[str, str]] = {
    "QUESTION_EMPTY": {
        "th": "กรุณาใส่คำถามก่อนเริ่มการทำนาย",
        "en": "Please enter a question before starting a reading.",
    },
    "QUESTION_TOO_SHORT": {
        "th": "กรุณาใส่คำถามที่ยาวกว่า 10 ตัวอักษร",
        "en": "Please enter a question longer than 10 characters.",
    },
    "QUESTION_TOO_LONG": {
        "th": "กรุณาใส่คำถามที่สั้นกว่า 180 ตัวอักษร",
        "en": "Please keep your question under 180 characters.",
    },
    "QUESTION_INAPPROPRIATE": {
        "th": "คำถามนี้มีเนื้อหาที่ไม่เหมาะสมสำหรับการทำนาย",
        "en": "This question contains content that is not suitable for a reading.",
    },
    "QUESTION_MULTIPLE_TOPICS": {
        "th": "คำถามนี้มีหลายประเด็น กรุณาถามทีละเรื่องเพื่อให้การทำนายแม่นยำ",
        "en": "This question covers several topics. Please ask about one thing at a time.",
    },
    "INSUFFICIENT_CREDITS": {
        "th": "คุณมีเครดิตไม่เพียงพอสำหรับการทำนายครั้งนี้",
        "en": "You do not have enough credits for this reading.",
    },
    "NOT_FOUND": {
        "th": "ไม่พบข้อมูลที่ต้องการ",
        "en": "The requested record could not be found.",
    },
    "AI_PROVIDER_ERROR": {
        "th": "ระบบ AI ไม่สามารถให้บริการได้ในขณะนี้",
        "en": "The reading service is unavailable right now.",
    },
    "AI_TIMEOUT": {
        "th": "การสร้างการทำนายใช้เวลานานเกินกำหนด",
        "en": "Generating your reading took too long.",
    },
    "AI_PARSING_ERROR": {
        "th": "ระบบไม่สามารถดำเนินการทำนายให้เสร็จสิ้นได้",
        "en": "We could not finish your reading.",
    },
    "INSUFFICIENT_CATALOG": {
        "th": "ระบบไม่สามารถเลือกไพ่ได้ในขณะนี้",
        "en": "Cards could not be drawn right now.",
    },
    "DATABASE_ERROR": {
        "th": "ระบบฐานข้อมูลไม่สามารถให้บริการได้ในขณะนี้",
        "en": "The database is unavailable right now.",
    },
    "JOB_STALLED": {
        "th": "คำขอใช้เวลานานเกินไป กรุณาลองใหม่อีกครั้ง",
        "en": "Your request took too long. Please try again.",
    },
    "READING_ID_CONFLICT": {
        "th": "รหัสการทำนายนี้ถูกใช้ไปแล้ว",
        "en": "This reading id is already in use.",
    },
    "STREAM_TIMEOUT": {
        "th": "การติดตามสถานะหมดเวลา กรุณาตรวจสอบผลการทำนายอีกครั้ง",
        "en": "Status updates timed out. Please check your reading again.",
    },
    "INTERNAL_ERROR": {
        "th": "เกิดข้อผิดพลาดภายในระบบ กรุณาลองใหม่อีกครั้ง",
        "en": "Something went wrong. Please try again.",
    },
}


def get_error_message(code: str, locale: str = "th") -> str:
    entry = ERROR_MESSAGES.get(code) or ERROR_MESSAGES["INTERNAL_ERROR"]
    return entry.get(locale) or entry["en"]


class ReadingEngineError(RuntimeError):
    """Base class for every failure the reading pipeline knows how to report.

    ``code`` is stable and machine readable; ``str(exc)`` is the technical
    detail that goes to the logs. The user never sees the technical detail,
    only :meth:`user_message`.
    """

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str = "", *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.code)
        if code is not None:
            self.code = code
        self.details = details or {}

    def user_message(self, locale: str = "th") -> str:
        return get_error_message(self.code, locale)


class ValidationError(ReadingEngineError):
    code = "QUESTION_INAPPROPRIATE"


class NotFoundError(ReadingEngineError):
    code = "NOT_FOUND"


class AIProviderError(ReadingEngineError):
    code = "AI_PROVIDER_ERROR"
    retryable = True


class LLMDisabledError(AIProviderError):
    retryable = False


class AIParsingError(ReadingEngineError):
    code = "AI_PARSING_ERROR"
    retryable = True


class PersistenceError(ReadingEngineError):
    code = "DATABASE_ERROR"
    retryable = True


class InsufficientCatalogError(ReadingEngineError):
    code = "INSUFFICIENT_CATALOG"


class JobStalledError(ReadingEngineError):
    code = "JOB_STALLED"
