"""
Usage accounting models: prompts, their parse outcomes, and free-text logs.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from app.domain.reminder import Base, AwareDateTime, utcnow


class Prompt(Base):
    """SQLAlchemy model for a message sent to the extractor."""

    __tablename__ = "prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=True)
    username = Column(String(255), nullable=True)
    text = Column(String(4096), nullable=False)
    tokens = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(AwareDateTime, nullable=False, default=utcnow)

    result = relationship("ParsedItem", back_populates="prompt", uselist=False, lazy="selectin")

    def __repr__(self) -> str:
        return f"<Prompt(id={self.id}, chat_id={self.chat_id}, tokens={self.tokens})>"


class ParsedItem(Base):
    """SQLAlchemy model for the outcome of one extraction."""

    __tablename__ = "parsed_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    successful = Column(Boolean, nullable=False, default=False, index=True)
    tokens = Column(Integer, nullable=False, default=0, index=True)
    prompt_id = Column(Integer, ForeignKey("prompts.id"), nullable=True)
    created_at = Column(AwareDateTime, nullable=False, default=utcnow)

    prompt = relationship("Prompt", back_populates="result")

    def __repr__(self) -> str:
        return f"<ParsedItem(id={self.id}, successful={self.successful})>"


class LogEntry(Base):
    """SQLAlchemy model for operator-facing log lines."""

    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(16), nullable=False)  # "log" or "err"
    message = Column(String(4096), nullable=False)
    created_at = Column(AwareDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<LogEntry(id={self.id}, type={self.type})>"
