"""Question screening and tagging, both done locally before any card is drawn."""

from __future__ import annotations

import logging
import re
import unicodedata

from tarot_engine.core.errors import ValidationError
from tarot_engine.schemas.reading import QuestionAnalysis

logger = logging.getLogger(__name__)

DEFAULT_MIN_LENGTH = 10
DEFAULT_MAX_LENGTH = 180

PROMPT_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+|any\s+)?(previous|prior|above)\s+(instructions|prompts?|rules)", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+|the\s+)?(previous|prior|above|system)", re.IGNORECASE),
    re.compile(r"forget\s+(everything\s+|all\s+|your\s+)+(previous\s+|prior\s+)?(instructions|rules)", re.IGNORECASE),
    re.compile(r"\b(system|developer)\s*prompt\b", re.IGNORECASE),
    re.compile(r"\byou\s+are\s+now\b", re.IGNORECASE),
    re.compile(r"\bact\s+as\s+(an?\s+)?(ai|assistant|developer|admin|dan)\b", re.IGNORECASE),
    re.compile(r"\bjailbreak\b", re.IGNORECASE),
    re.compile(r"\bDAN\s+mode\b", re.IGNORECASE),
    re.compile(r"<\s*/?\s*(system|assistant|script)\s*>", re.IGNORECASE),
    re.compile(r"\[\s*(system|inst)\s*\]", re.IGNORECASE),
    re.compile(r"(reveal|show|print|repeat)\s+(your|the)\s+(prompt|instructions|rules)", re.IGNORECASE),
    re.compile(r"ลืม(คำสั่ง|กฎ)ทั้งหมด"),
    re.compile(r"ไม่ต้องสนใจ(คำสั่ง|กฎ)"),
]

INAPPROPRIATE_PATTERNS = [
    re.compile(r"\b(kill|murder|poison|hurt)\s+(him|her|them|my|someone|somebody)\b", re.IGNORECASE),
    re.compile(r"\b(suicide|self[-\s]?harm)\b", re.IGNORECASE),
    re.compile(r"\b(bomb|explosive|weapon)s?\b", re.IGNORECASE),
    re.compile(r"\b(lottery|lotto)\s+numbers?\b", re.IGNORECASE),
    re.compile(r"ฆ่า"),
    re.compile(r"เลขเด็ด|หวยงวด"),
]

_LIST_MARKER_RE = re.compile(r"(?:^|\s)\d{1,2}[.)]\s")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

TOPIC_KEYWORDS: dict[str, list[str]] = {
    "love": ["love", "relationship", "partner", "boyfriend", "girlfriend", "crush", "marriage", "ex", "ความรัก", "แฟน", "คู่", "แต่งงาน", "คนรัก"],
    "career": ["job", "career", "work", "boss", "promotion", "interview", "business", "งาน", "อาชีพ", "เจ้านาย", "เลื่อนตำแหน่ง", "ธุรกิจ"],
    "finance": ["money", "finance", "debt", "invest", "salary", "income", "เงิน", "การเงิน", "หนี้", "ลงทุน", "รายได้"],
    "health": ["health", "sick", "illness", "surgery", "recover", "สุขภาพ", "ป่วย", "ผ่าตัด"],
    "education": ["exam", "study", "school", "university", "scholarship", "สอบ", "เรียน", "มหาวิทยาลัย", "ทุน"],
    "family": ["family", "mother", "father", "parents", "sister", "brother", "child", "ครอบครัว", "แม่", "พ่อ", "ลูก", "พี่น้อง"],
}

MOOD_KEYWORDS: dict[str, list[str]] = {
    "anxious": ["worried", "worry", "afraid", "scared", "nervous", "anxious", "กังวล", "กลัว", "เครียด"],
    "hopeful": ["hope", "hoping", "wish", "excited", "looking forward", "หวัง", "อยาก", "ตื่นเต้น"],
    "sad": ["sad", "hurt", "lonely", "heartbroken", "lost", "เสียใจ", "เหงา", "เจ็บ", "ผิดหวัง"],
}

PERIOD_KEYWORDS: dict[str, list[str]] = {
    "future": ["will", "next", "future", "soon", "tomorrow", "upcoming", "this year", "จะ", "อนาคต", "เร็วๆ นี้", "ปีหน้า", "เดือนหน้า"],
    "past": ["was", "did", "last", "ago", "used to", "past", "เคย", "ที่ผ่านมา", "อดีต"],
}

# vocabulary accepted from model analysis; the last tag is the keyword default
MOOD_TAGS = (*MOOD_KEYWORDS, "neutral")
TOPIC_TAGS = (*TOPIC_KEYWORDS, "general")
PERIOD_TAGS = (*PERIOD_KEYWORDS, "present")


def normalize_question(question: str) -> str:
    text = unicodedata.normalize("NFC", question or "")
    text = _CONTROL_CHARS_RE.sub("", text)
    return " ".join(text.split())


def _is_multi_part(question: str) -> bool:
    if question.count("?") + question.count("？") >= 2:
        return True
    return len(_LIST_MARKER_RE.findall(question)) >= 2


def filter_question(
    question: str,
    *,
    min_length: int = DEFAULT_MIN_LENGTH,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> str:
    """Return the normalized question or raise ``ValidationError``.

    Rejects empty, too-short, too-long and multi-part questions, plus prompt
    injection attempts and content that must not be read for.
    """
    text = normalize_question(question)
    if not text:
        raise ValidationError("question is empty", code="QUESTION_EMPTY")
    if len(text) < min_length:
        raise ValidationError(
            f"question shorter than {min_length} characters",
            code="QUESTION_TOO_SHORT",
            details={"length": len(text), "min_length": min_length},
        )
    if len(text) > max_length:
        raise ValidationError(
            f"question longer than {max_length} characters",
            code="QUESTION_TOO_LONG",
            details={"length": len(text), "max_length": max_length},
        )

    for pattern in PROMPT_INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning("question.injection_blocked pattern=%r", pattern.pattern)
            raise ValidationError("question matched a prompt injection pattern", code="QUESTION_INAPPROPRIATE")
    for pattern in INAPPROPRIATE_PATTERNS:
        if pattern.search(text):
            logger.info("question.inappropriate pattern=%r", pattern.pattern)
            raise ValidationError("question matched a disallowed content pattern", code="QUESTION_INAPPROPRIATE")

    if _is_multi_part(text):
        raise ValidationError("question asks about several things at once", code="QUESTION_MULTIPLE_TOPICS")
    return text


def _keyword_hits(text: str, keywords: list[str]) -> int:
    hits = 0
    for keyword in keywords:
        if keyword.isascii():
            if re.search(rf"\b{re.escape(keyword)}\b", text):
                hits += 1
        elif keyword in text:
            hits += 1
    return hits


def _best_tag(text: str, table: dict[str, list[str]], default: str) -> str:
    best, best_hits = default, 0
    for tag, keywords in table.items():
        hits = _keyword_hits(text, keywords)
        if hits > best_hits:
            best, best_hits = tag, hits
    return best


def analyze_question(question: str) -> QuestionAnalysis:
    text = normalize_question(question).lower()
    return QuestionAnalysis(
        mood=_best_tag(text, MOOD_KEYWORDS, "neutral"),
        topic=_best_tag(text, TOPIC_KEYWORDS, "general"),
        period=_best_tag(text, PERIOD_KEYWORDS, "present"),
    )


def coerce_analysis(data: dict, fallback: QuestionAnalysis) -> QuestionAnalysis:
    """Keep model-provided tags that are in the known vocabulary; anything
    else falls back to the keyword tag for that field."""

    def pick(field: str, allowed: tuple[str, ...]) -> str:
        value = str(data.get(field) or "").strip().lower()
        return value if value in allowed else getattr(fallback, field)

    return QuestionAnalysis(
        mood=pick("mood", MOOD_TAGS),
        topic=pick("topic", TOPIC_TAGS),
        period=pick("period", PERIOD_TAGS),
    )
