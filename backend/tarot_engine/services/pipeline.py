"""Turns a user question into a finished tarot reading.

Stages run in a fixed order: question filter, question analysis, card
selection, reading generation, parse and validate. Question analysis falls
back to keyword tags instead of failing; any other stage failure ends the run
with a :class:`~tarot_engine.core.errors.ReadingEngineError` and the caller
decides what that means for the reading row and the user's credits.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError

from tarot_engine.core.errors import AIParsingError, AIProviderError, LLMDisabledError, ReadingEngineError
from tarot_engine.schemas.reading import (
    READING_CONTENT_FIELDS,
    CardReading,
    QuestionAnalysis,
    ReadingAnswer,
    ReadingContent,
)
from tarot_engine.services.card_picker import CatalogCard, format_cards_for_prompt, pick_random_cards
from tarot_engine.services.json_parser import log_parsing_error, parse_and_validate_ai_response
from tarot_engine.services.progress import ProgressEvent
from tarot_engine.services.question_filter import (
    MOOD_TAGS,
    PERIOD_TAGS,
    TOPIC_TAGS,
    analyze_question,
    coerce_analysis,
    filter_question,
)

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def invoke(self, messages: list[dict[str, Any]], *, purpose: str = ...) -> str: ...


class CardCatalog(Protocol):
    def list_cards(self) -> Sequence[CatalogCard]: ...


ProgressCallback = Callable[[ProgressEvent], None]


READING_SYSTEM_PROMPT = (
    "You are a warm, thoughtful tarot reader. You answer one question at a time using only the cards "
    "you are given, in their given positions. You never give medical, legal or financial instructions "
    "and never claim certainty about the future.\n"
    "Reply with a single JSON object and nothing else, using exactly these keys:\n"
    '{"header": string, "reading": string, "suggestions": [string, ...], "next_questions": [string, ...], '
    '"final": string, "end": string, "notice": string}\n'
    "- header: a warm greeting that restates the question\n"
    "- reading: the main reading, card by card, tied back to the question\n"
    "- suggestions: three practical suggestions\n"
    "- next_questions: three follow-up questions the user could ask\n"
    "- final: a short summary with encouragement\n"
    "- end: a warm closing line\n"
    "- notice: a reminder that tarot is for reflection and entertainment"
)

_LANGUAGE_INSTRUCTIONS = {
    "th": "เขียนด้วยภาษาไทยที่อบอุ่น เป็นกันเอง และให้กำลังใจ",
    "en": "Write in warm, friendly and encouraging English.",
}


def build_reading_messages(
    question: str,
    analysis: QuestionAnalysis,
    cards: Sequence[CardReading],
    *,
    locale: str = "th",
) -> list[dict[str, str]]:
    user_prompt = (
        f'User Question: "{question}"\n\n'
        "Question Analysis:\n"
        f"- Mood: {analysis.mood}\n"
        f"- Topic: {analysis.topic}\n"
        f"- Period: {analysis.period}\n\n"
        "Selected Cards:\n"
        f"{format_cards_for_prompt(cards)}\n\n"
        f"{_LANGUAGE_INSTRUCTIONS.get(locale, _LANGUAGE_INSTRUCTIONS['en'])}"
    )
    return [
        {"role": "system", "content": READING_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


ANALYSIS_FIELDS = ["mood", "topic", "period"]

ANALYSIS_SYSTEM_PROMPT = (
    "You classify a tarot question before it is read. Reply with a single JSON object and nothing else:\n"
    '{"mood": string, "topic": string, "period": string}\n'
    f"- mood: one of {', '.join(MOOD_TAGS)}\n"
    f"- topic: one of {', '.join(TOPIC_TAGS)}\n"
    f"- period: one of {', '.join(PERIOD_TAGS)}"
)


def build_analysis_messages(question: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
        {"role": "user", "content": f'Question: "{question}"'},
    ]


def _coerce_content(data: dict[str, Any]) -> ReadingContent:
    suggestions = data.get("suggestions")
    next_questions = data.get("next_questions")
    return ReadingContent(
        header=str(data["header"]),
        reading=str(data["reading"]),
        suggestions=[str(s) for s in suggestions] if isinstance(suggestions, list) else [],
        next_questions=[str(q) for q in next_questions] if isinstance(next_questions, list) else [],
        final=str(data["final"]),
        end=str(data["end"]),
        notice=str(data["notice"]),
    )


class GenerationPipeline:
    def __init__(
        self,
        llm: TextGenerator | None,
        catalog: CardCatalog,
        *,
        fallback_llm: TextGenerator | None = None,
        generation_timeout_s: float = 60.0,
        analysis_timeout_s: float = 15.0,
        max_attempts: int = 3,
        question_min_length: int = 10,
        question_max_length: int = 180,
        locale: str = "th",
        rng: random.Random | None = None,
    ) -> None:
        self._llm = llm
        self._fallback_llm = fallback_llm
        self._catalog = catalog
        self._generation_timeout_s = generation_timeout_s
        self._analysis_timeout_s = analysis_timeout_s
        self._max_attempts = max(1, int(max_attempts))
        self._question_min_length = question_min_length
        self._question_max_length = question_max_length
        self._locale = locale
        self._rng = rng or random.Random()

    async def run(self, question: str, progress: ProgressCallback | None = None) -> ReadingAnswer:
        def report(step: str, **details: Any) -> None:
            if progress is not None:
                progress(ProgressEvent.for_step(step, **details))

        report("validating")
        text = filter_question(
            question,
            min_length=self._question_min_length,
            max_length=self._question_max_length,
        )
        analysis = await self._analyze(text)

        report("selecting_cards")
        selection = pick_random_cards(self._catalog.list_cards(), self._rng)

        report("analyzing")
        messages = build_reading_messages(text, analysis, selection.cards, locale=self._locale)

        content, attempts = await self._generate(messages, report)

        report("finalizing")
        return ReadingAnswer(
            question_analysis=analysis,
            cards=selection.cards,
            reading=content,
            generation_attempts=attempts,
            created_at=datetime.now(timezone.utc),
        )

    async def _analyze(self, text: str) -> QuestionAnalysis:
        """Mood, topic and period from the model, keyword tags when it can't say."""
        keyword_analysis = analyze_question(text)
        llm = self._llm or self._fallback_llm
        if llm is None:
            return keyword_analysis

        try:
            raw = await asyncio.wait_for(
                llm.invoke(build_analysis_messages(text), purpose="analysis"),
                timeout=self._analysis_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("pipeline.analysis_timeout timeout_s=%s", self._analysis_timeout_s)
            return keyword_analysis
        except AIProviderError as exc:
            logger.warning("pipeline.analysis_failed code=%s error=%s", exc.code, exc)
            return keyword_analysis

        parsed = parse_and_validate_ai_response(raw, ANALYSIS_FIELDS)
        if not parsed.success or parsed.data is None:
            log_parsing_error("analysis", raw, parsed.error or "unknown error")
            return keyword_analysis

        analysis = coerce_analysis(parsed.data, keyword_analysis)
        logger.debug("pipeline.analyzed mood=%s topic=%s period=%s", analysis.mood, analysis.topic, analysis.period)
        return analysis

    async def _generate(
        self,
        messages: list[dict[str, str]],
        report: Callable[..., None],
    ) -> tuple[ReadingContent, int]:
        """Call the provider until a complete reading comes back.

        Provider errors and unusable output both count against max_attempts.
        When the main provider runs out (or is disabled) the fallback provider
        gets the same number of attempts; after that the last error is raised.
        """
        providers = [
            (name, llm)
            for name, llm in (("primary", self._llm), ("fallback", self._fallback_llm))
            if llm is not None
        ]
        if not providers:
            raise LLMDisabledError("LLM is not configured")

        attempt = 0
        last_error: ReadingEngineError | None = None
        for name, llm in providers:
            if last_error is not None:
                logger.warning("pipeline.provider_fallback provider=%s after_code=%s", name, last_error.code)
            content, attempt, last_error = await self._generate_with(llm, name, messages, report, attempt)
            if content is not None:
                return content, attempt

        assert last_error is not None
        raise last_error

    async def _generate_with(
        self,
        llm: TextGenerator,
        name: str,
        messages: list[dict[str, str]],
        report: Callable[..., None],
        attempt: int,
    ) -> tuple[ReadingContent | None, int, ReadingEngineError | None]:
        """One provider's share of attempts; ``attempt`` keeps counting across providers."""
        last_error: ReadingEngineError | None = None
        for _ in range(self._max_attempts):
            attempt += 1
            report("generating", attempt=attempt)
            try:
                raw = await asyncio.wait_for(
                    llm.invoke(messages, purpose="reading"),
                    timeout=self._generation_timeout_s,
                )
            except asyncio.TimeoutError:
                last_error = AIProviderError(
                    f"generation timed out after {self._generation_timeout_s}s",
                    code="AI_TIMEOUT",
                    details={"attempt": attempt, "provider": name},
                )
                logger.warning(
                    "pipeline.generation_timeout provider=%s attempt=%s timeout_s=%s",
                    name,
                    attempt,
                    self._generation_timeout_s,
                )
                continue
            except LLMDisabledError as exc:
                logger.warning("pipeline.provider_disabled provider=%s error=%s", name, exc)
                return None, attempt, exc
            except AIProviderError as exc:
                last_error = exc
                logger.warning("pipeline.provider_error provider=%s attempt=%s error=%s", name, attempt, exc)
                continue

            parsed = parse_and_validate_ai_response(raw, READING_CONTENT_FIELDS)
            if not parsed.success:
                log_parsing_error("reading", raw, parsed.error or "unknown error")
                last_error = AIParsingError(
                    parsed.error or "unparseable reading",
                    details={"attempt": attempt, "missing_fields": parsed.missing_fields},
                )
                continue
            try:
                content = _coerce_content(parsed.data)
            except (PydanticValidationError, KeyError, TypeError) as exc:
                log_parsing_error("reading", raw, str(exc))
                last_error = AIParsingError(f"reading did not match schema: {exc}", details={"attempt": attempt})
                continue

            logger.info("pipeline.generated provider=%s attempts=%s", name, attempt)
            return content, attempt, None

        assert last_error is not None
        logger.warning(
            "pipeline.attempts_exhausted provider=%s attempts=%s code=%s",
            name,
            self._max_attempts,
            last_error.code,
        )
        return None, attempt, last_error
