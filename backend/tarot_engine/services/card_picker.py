from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from sqlalchemy.orm import Session

from tarot_engine.core.errors import InsufficientCatalogError
from tarot_engine.models.card import Card
from tarot_engine.schemas.reading import CardReading
from tarot_engine.services.cache import TTLCache

logger = logging.getLogger(__name__)

MIN_CATALOG_SIZE = 5
CARD_COUNTS = (3, 5)
_CATALOG_CACHE_KEY = "cards:all"


@dataclass(frozen=True)
class CatalogCard:
    id: int
    name: str
    display_name: str
    arcana: str
    short_meaning: str
    keywords: tuple[str, ...] = ()
    image_url: str | None = None


@dataclass(frozen=True)
class CardSelection:
    cards: list[CardReading]
    count: int


def _normalize_keywords(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return tuple(k.strip() for k in raw.split(",") if k.strip())
    if isinstance(raw, (list, tuple)):
        return tuple(str(k).strip() for k in raw if str(k).strip())
    return ()


def catalog_card_from_row(row: Card) -> CatalogCard:
    return CatalogCard(
        id=int(row.id),
        name=row.name,
        display_name=row.display_name or row.name,
        arcana=row.arcana or "",
        short_meaning=row.short_meaning or "",
        keywords=_normalize_keywords(row.keywords),
        image_url=row.image_url,
    )


class SqlCardCatalog:
    """Read-only card catalog backed by the ``cards`` table.

    The catalog rarely changes, so the full list is cached for ``ttl_s``.
    """

    def __init__(self, session_factory: Callable[[], Session], *, cache: TTLCache | None = None, ttl_s: int = 300) -> None:
        self._session_factory = session_factory
        self._cache = cache or TTLCache(max_items=4, ttl_s=ttl_s)

    def list_cards(self) -> list[CatalogCard]:
        cached = self._cache.get(_CATALOG_CACHE_KEY)
        if cached is not None:
            return list(cached)

        db = self._session_factory()
        try:
            rows = db.query(Card).order_by(Card.id.asc()).all()
            cards = [catalog_card_from_row(row) for row in rows]
        finally:
            db.close()

        if cards:
            self._cache.set(_CATALOG_CACHE_KEY, tuple(cards))
        logger.info("cards.catalog_loaded count=%s", len(cards))
        return cards

    def invalidate(self) -> None:
        self._cache.invalidate(_CATALOG_CACHE_KEY)


def choose_card_count(rng: random.Random) -> int:
    # a fair coin between the two spreads, never 4
    return CARD_COUNTS[0] if rng.random() < 0.5 else CARD_COUNTS[1]


def pick_random_cards(cards: Sequence[CatalogCard], rng: random.Random | None = None) -> CardSelection:
    """Draw 3 or 5 distinct cards from the catalog.

    Every catalog id is shuffled (``random.shuffle`` is Fisher-Yates) and the
    first ``count`` ids are taken; positions follow the shuffle order.
    """
    rng = rng or random.Random()
    if len(cards) < MIN_CATALOG_SIZE:
        raise InsufficientCatalogError(
            f"card catalog has {len(cards)} cards, need at least {MIN_CATALOG_SIZE}",
            details={"catalog_size": len(cards)},
        )

    by_id = {card.id: card for card in cards}
    if len(by_id) < MIN_CATALOG_SIZE:
        raise InsufficientCatalogError(
            f"card catalog has {len(by_id)} distinct cards, need at least {MIN_CATALOG_SIZE}",
            details={"catalog_size": len(by_id)},
        )

    count = choose_card_count(rng)
    ids = sorted(by_id)
    rng.shuffle(ids)

    selected = [
        CardReading(
            id=card.id,
            name=card.name,
            display_name=card.display_name,
            arcana=card.arcana,
            short_meaning=card.short_meaning,
            keywords=list(card.keywords),
            image_url=card.image_url,
            position=position,
        )
        for position, card in enumerate((by_id[card_id] for card_id in ids[:count]), start=1)
    ]
    logger.info("cards.selected count=%s ids=%s", count, [c.id for c in selected])
    return CardSelection(cards=selected, count=count)


def format_cards_for_prompt(cards: Sequence[CardReading]) -> str:
    blocks = []
    for card in cards:
        blocks.append(
            f"Card {card.position}: {card.display_name}\n"
            f"- Arcana: {card.arcana}\n"
            f"- Meaning: {card.short_meaning}\n"
            f"- Keywords: {', '.join(card.keywords)}"
        )
    return "\n\n".join(blocks)
