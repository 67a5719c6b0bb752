"""
Reminder queue domain models and schemas.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, String, DateTime, Integer, JSON, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator
from pydantic import BaseModel, ConfigDict, Field

Base = declarative_base()


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class AwareDateTime(TypeDecorator):
    """
    Stores aware datetimes as naive UTC and returns them as aware UTC.

    SQLite has no timezone support, so every instant is normalized on the way
    in; comparisons in WHERE clauses then compare like with like.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime is not allowed: {value!r}")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class ReminderItem(Base):
    """SQLAlchemy model for a queued reminder."""

    __tablename__ = "queue_items"
    __table_args__ = (
        Index("idx_queue_chat_delivered", "chat_id", "delivered_on"),
        Index("idx_queue_deliverable", "delivered_on", "num_tries", "fire_on"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(64), nullable=False, index=True)
    origin_message_id = Column(String(64), nullable=False)
    message = Column(String(4096), nullable=False)
    enqueued_on = Column(AwareDateTime, nullable=False, default=utcnow, index=True)
    fire_on = Column(AwareDateTime, nullable=False)
    delivered_on = Column(AwareDateTime, nullable=True)
    num_tries = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<ReminderItem(id={self.id}, chat_id={self.chat_id}, "
            f"fire_on={self.fire_on}, num_tries={self.num_tries})>"
        )


class PendingSelection(Base):
    """A message waiting for the user to pick one of several datetimes."""

    __tablename__ = "pending_selections"
    __table_args__ = (
        Index("idx_pending_selection_key", "chat_id", "origin_message_id", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(64), nullable=False)
    origin_message_id = Column(String(64), nullable=False)
    message = Column(String(4096), nullable=False)
    choices = Column(JSON, nullable=False, default=list)  # UTC ISO instants, in offered order
    saved_on = Column(AwareDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<PendingSelection(chat_id={self.chat_id}, origin_message_id={self.origin_message_id})>"


# Pydantic Schemas

class RawCandidate(BaseModel):
    """A (message, when) pair returned by the extractor."""
    message: str = Field(..., min_length=1)
    when: datetime


class ReminderCandidate(BaseModel):
    """A proposed reminder before it is committed to the queue."""
    model_config = ConfigDict(frozen=True)

    message: str
    when: datetime
    synthetic: bool = False


class ReminderItemResponse(BaseModel):
    """Schema for a queued reminder."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    chat_id: str
    origin_message_id: str
    message: str
    enqueued_on: datetime
    fire_on: datetime
    delivered_on: Optional[datetime]
    num_tries: int


class DeliveryResult(BaseModel):
    """Outcome of handing a reminder to the chat transport."""
    ok: bool
    reason: Optional[str] = None


class ExtractionResult(BaseModel):
    """Validated extractor output plus token usage."""
    candidates: List[RawCandidate] = []
    prompt_tokens: int = 0
    completion_tokens: int = 0
