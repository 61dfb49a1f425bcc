"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas and the LLM contract, see schemas.py.
"""

from sqlalchemy import Column, ForeignKey, String, Text

from app.storage import Base


STATUS_ACTIVE = "ACTIVE"
STATUS_PAUSED = "PAUSED"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


class Conversation(Base):
    """
    One row per external party (phone number).

    Table: conversations
    Status only moves ACTIVE -> PAUSED, when an operator takes over.
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True)
    status = Column(String, nullable=False, default=STATUS_ACTIVE)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)


class Message(Base):
    """
    Append-only transcript entry.

    Table: messages
    Primary Key: id (provider message id for user turns, ensures idempotency)
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(String, nullable=False, index=True)


class ExtractedData(Base):
    """Latest structured data pulled out of the conversation by the model."""
    __tablename__ = "extracted_data"

    conversation_id = Column(String, ForeignKey("conversations.id"), primary_key=True)
    json_dump = Column(Text, nullable=True)
    updated_at = Column(String, nullable=False)
