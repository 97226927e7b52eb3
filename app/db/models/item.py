"""
Item Model - content saved by a user (movies, videos, links, notes)
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Text

from app.core.clock import utcnow
from app.db.database import Base


class ItemType(str, enum.Enum):
    MOVIE = "movie"
    VIDEO = "video"
    LINK = "link"
    NOTE = "note"


class Item(Base):
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    title = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    item_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
