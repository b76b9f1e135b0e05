from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from tarot_engine.core.database import Base


READING_SPEND = "READING_SPEND"
READING_REFUND = "READING_REFUND"
READING_REWARD = "READING_REWARD"


def transaction_id_for(event_type: str, reading_id: str) -> str:
    """Ledger ids are keyed by (event type, reading) so a replayed write hits
    the primary key instead of creating a second entry."""
    return f"{event_type.lower()}:{reading_id}"


class PointTransaction(Base):
    __tablename__ = "point_transactions"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    event_type = Column(String, index=True, nullable=False)
    delta_free_point = Column(Integer, default=0, nullable=False)
    delta_stars = Column(Integer, default=0, nullable=False)
    delta_coins = Column(Integer, default=0, nullable=False)
    delta_exp = Column(Integer, default=0, nullable=False)
    reading_id = Column(String, index=True, nullable=True)
    # original entry for refunds; unique so one deduction can be refunded once
    reference_id = Column(String, unique=True, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
