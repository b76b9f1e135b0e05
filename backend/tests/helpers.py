import asyncio
import json
from datetime import datetime, timezone

from tarot_engine.core.database import build_engine, build_session_factory, init_db
from tarot_engine.models.card import Card
from tarot_engine.models.user import User
from tarot_engine.schemas.reading import CardReading, QuestionAnalysis, ReadingAnswer, ReadingContent
from tarot_engine.services.card_picker import CatalogCard


VALID_READING = {
    "header": "สวัสดีค่ะ มาดูกันว่าไพ่บอกอะไรเกี่ยวกับงานใหม่ของคุณ",
    "reading": "ไพ่ใบแรกแสดงถึงการเริ่มต้นใหม่...",
    "suggestions": ["เตรียมตัวให้พร้อม", "ฟังเสียงภายใน", "อย่ารีบตัดสินใจ"],
    "next_questions": ["ควรเริ่มเมื่อไหร่", "ใครจะช่วยได้", "ควรระวังอะไร"],
    "final": "ทุกอย่างจะค่อยๆ ดีขึ้น",
    "end": "ขอให้โชคดีค่ะ",
    "notice": "การดูดวงเป็นเพียงแนวทางเพื่อการไตร่ตรอง",
}
VALID_READING_JSON = json.dumps(VALID_READING, ensure_ascii=False)
ANALYSIS_JSON = json.dumps({"mood": "hopeful", "topic": "career", "period": "future"})

QUESTION = "Will I get the new job I applied for?"

HANG = object()


def make_session_factory():
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    return engine, build_session_factory(engine)


def add_user(session_factory, user_id: str = "user-1", *, free_point: int = 0, stars: int = 0) -> None:
    db = session_factory()
    try:
        db.add(User(id=user_id, free_point=free_point, stars=stars))
        db.commit()
    finally:
        db.close()


def make_catalog_cards(count: int = 22) -> list[CatalogCard]:
    return [
        CatalogCard(
            id=i,
            name=f"card_{i}",
            display_name=f"Card {i}",
            arcana="Major",
            short_meaning=f"meaning {i}",
            keywords=(f"kw{i}",),
        )
        for i in range(1, count + 1)
    ]


def seed_card_rows(session_factory, count: int = 22) -> None:
    db = session_factory()
    try:
        for card in make_catalog_cards(count):
            db.add(
                Card(
                    id=card.id,
                    name=card.name,
                    display_name=card.display_name,
                    arcana=card.arcana,
                    short_meaning=card.short_meaning,
                    keywords=list(card.keywords),
                )
            )
        db.commit()
    finally:
        db.close()


class StaticCatalog:
    def __init__(self, cards=None) -> None:
        self.cards = list(cards if cards is not None else make_catalog_cards())

    def list_cards(self):
        return list(self.cards)


class FakeLLM:
    """Scripted text generator.

    Each reading call consumes the next script item: a string is returned, an
    exception is raised, ``HANG`` blocks until cancelled. The last item
    repeats once the script runs out. Question analysis calls are answered
    from ``analysis`` and counted separately.
    """

    def __init__(self, *script, analysis=ANALYSIS_JSON) -> None:
        self.script = list(script) or [VALID_READING_JSON]
        self.analysis = analysis
        self.calls = 0
        self.messages = []
        self.analysis_calls = 0
        self.analysis_messages = []

    async def invoke(self, messages, *, purpose: str = "reading") -> str:
        if purpose == "analysis":
            self.analysis_messages.append(messages)
            self.analysis_calls += 1
            item = self.analysis
        else:
            self.messages.append(messages)
            item = self.script[min(self.calls, len(self.script) - 1)]
            self.calls += 1
        if item is HANG:
            await asyncio.sleep(3600)
        if isinstance(item, BaseException):
            raise item
        return item


def make_answer(card_count: int = 3) -> ReadingAnswer:
    return ReadingAnswer(
        question_analysis=QuestionAnalysis(mood="neutral", topic="career", period="future"),
        cards=[
            CardReading(id=i, name=f"card_{i}", display_name=f"Card {i}", arcana="Major", short_meaning="", position=i)
            for i in range(1, card_count + 1)
        ],
        reading=ReadingContent(**VALID_READING),
        created_at=datetime.now(timezone.utc),
    )
