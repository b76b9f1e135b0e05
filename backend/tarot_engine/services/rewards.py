from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from tarot_engine.models.reward_configuration import RewardConfiguration

logger = logging.getLogger(__name__)


READING_COST = "READING_COST"
READING_COMPLETED = "READING_COMPLETED"


@dataclass(frozen=True)
class EventRewards:
    free_point: int = 0
    stars: int = 0
    coins: int = 0
    exp: int = 0

    @property
    def credits(self) -> int:
        return self.free_point + self.stars


FALLBACK_REWARDS: dict[str, EventRewards] = {
    READING_COST: EventRewards(stars=1),
    READING_COMPLETED: EventRewards(exp=10, coins=5),
}


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def normalize_rewards(raw: Any) -> EventRewards:
    if not isinstance(raw, dict):
        return EventRewards()
    # older rows use camelCase keys and "coin" singular
    return EventRewards(
        free_point=_as_int(raw.get("free_point", raw.get("freePoint"))),
        stars=_as_int(raw.get("stars")),
        coins=_as_int(raw.get("coins", raw.get("coin"))),
        exp=_as_int(raw.get("exp")),
    )


def get_event_rewards(db: Session, name: str) -> EventRewards:
    config = db.query(RewardConfiguration).filter(RewardConfiguration.name == name).first()
    if config is None or not config.is_active:
        return FALLBACK_REWARDS.get(name, EventRewards())
    return normalize_rewards(config.rewards)


def reading_cost(db: Session) -> int:
    cost = get_event_rewards(db, READING_COST).credits
    if cost <= 0:
        logger.warning("rewards.reading_cost_invalid cost=%s using=1", cost)
        return 1
    return cost
