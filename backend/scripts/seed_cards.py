from dotenv import load_dotenv
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

load_dotenv(".env")

from sqlalchemy.orm import Session

from tarot_engine.core.database import build_engine, build_session_factory, init_db
from tarot_engine.core.settings import Settings
from tarot_engine.models.card import Card
from tarot_engine.models.reward_configuration import RewardConfiguration
from tarot_engine.services.rewards import READING_COMPLETED, READING_COST


MAJOR_ARCANA = [
    ("the_fool", "The Fool", "New beginnings and a leap of faith", ["beginnings", "innocence", "spontaneity"]),
    ("the_magician", "The Magician", "Skill and willpower turned into action", ["manifestation", "resourcefulness", "power"]),
    ("the_high_priestess", "The High Priestess", "Intuition and hidden knowledge", ["intuition", "mystery", "inner voice"]),
    ("the_empress", "The Empress", "Abundance, care and creativity", ["fertility", "nurturing", "abundance"]),
    ("the_emperor", "The Emperor", "Structure, authority and stability", ["authority", "structure", "control"]),
    ("the_hierophant", "The Hierophant", "Tradition and trusted guidance", ["tradition", "conformity", "guidance"]),
    ("the_lovers", "The Lovers", "Love, harmony and meaningful choices", ["love", "harmony", "choices"]),
    ("the_chariot", "The Chariot", "Determination carries you forward", ["control", "willpower", "victory"]),
    ("strength", "Strength", "Courage and gentle inner strength", ["courage", "patience", "compassion"]),
    ("the_hermit", "The Hermit", "Reflection and looking inward", ["introspection", "solitude", "guidance"]),
    ("wheel_of_fortune", "Wheel of Fortune", "Cycles turn and luck changes", ["change", "cycles", "fate"]),
    ("justice", "Justice", "Fairness, truth and consequences", ["fairness", "truth", "law"]),
    ("the_hanged_man", "The Hanged Man", "Pause and see things differently", ["surrender", "perspective", "pause"]),
    ("death", "Death", "An ending that makes room for something new", ["endings", "transformation", "transition"]),
    ("temperance", "Temperance", "Balance, moderation and patience", ["balance", "moderation", "patience"]),
    ("the_devil", "The Devil", "Attachments and patterns that hold you back", ["attachment", "temptation", "shadow"]),
    ("the_tower", "The Tower", "Sudden change that clears the way", ["upheaval", "revelation", "awakening"]),
    ("the_star", "The Star", "Hope, renewal and calm", ["hope", "renewal", "inspiration"]),
    ("the_moon", "The Moon", "Uncertainty and the unconscious", ["illusion", "fear", "intuition"]),
    ("the_sun", "The Sun", "Joy, success and warmth", ["joy", "success", "positivity"]),
    ("judgement", "Judgement", "Awakening and a call to reflect", ["rebirth", "reflection", "absolution"]),
    ("the_world", "The World", "Completion and fulfilment", ["completion", "achievement", "wholeness"]),
]

DEFAULT_REWARDS = {
    READING_COST: {"stars": 1},
    READING_COMPLETED: {"exp": 10, "coins": 5},
}


def seed_cards(db: Session) -> int:
    existing = {name for (name,) in db.query(Card.name).all()}
    added = 0
    for index, (name, display_name, short_meaning, keywords) in enumerate(MAJOR_ARCANA):
        if name in existing:
            continue
        db.add(
            Card(
                id=index + 1,
                name=name,
                display_name=display_name,
                arcana="Major",
                short_meaning=short_meaning,
                keywords=keywords,
                image_url=f"/cards/{name}.png",
            )
        )
        added += 1
    db.commit()
    return added


def seed_rewards(db: Session) -> int:
    existing = {name for (name,) in db.query(RewardConfiguration.name).all()}
    added = 0
    for name, rewards in DEFAULT_REWARDS.items():
        if name in existing:
            continue
        db.add(RewardConfiguration(name=name, rewards=rewards, is_active=True))
        added += 1
    db.commit()
    return added


def main() -> None:
    settings = Settings()
    engine = build_engine(settings.database_url)
    init_db(engine)
    db = build_session_factory(engine)()
    try:
        cards = seed_cards(db)
        rewards = seed_rewards(db)
    finally:
        db.close()
    print(f"seeded cards={cards} rewards={rewards}")


if __name__ == "__main__":
    main()
