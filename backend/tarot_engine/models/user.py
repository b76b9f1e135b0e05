from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from tarot_engine.core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=True)
    # promotional balance, always spent before stars
    free_point = Column(Integer, default=0, nullable=False)
    # paid balance
    stars = Column(Integer, default=0, nullable=False)
    coins = Column(Integer, default=0, nullable=False)
    exp = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
