from sqlalchemy import JSON, Column, Integer, String, Text

from tarot_engine.core.database import Base


class Card(Base):
    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    arcana = Column(String, nullable=False, default="Major")
    short_meaning = Column(Text, nullable=False, default="")
    keywords = Column(JSON, nullable=True)
    image_url = Column(String, nullable=True)
