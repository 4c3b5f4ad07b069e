"""
Chat models — the assistant conversation of each form.

Every form has at most one chat session. Messages are kept in send order by
an explicit per-session sequence number; assistant messages carry the tool
invocations the model emitted and whether the user already applied them.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


class ChatSession(Base):
    """The chat session attached to one form."""

    __tablename__ = "ai_chat_sessions"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    form_id = Column(String(255), nullable=False, unique=True, index=True)
    # Owner of the chat; authentication happens outside this service
    user_id = Column(String(255), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        """Serialize to a JSON-friendly dict."""
        return {
            "id": self.id,
            "formId": self.form_id,
            "userId": self.user_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class ChatMessage(Base):
    """A user or assistant message in a chat session."""

    __tablename__ = "ai_chat_messages"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    session_id = Column(
        String(36),
        ForeignKey("ai_chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False, default="")
    tool_invocations = Column(JSON, nullable=True)
    actions_applied = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        """Serialize to the message shape the chat panel renders."""
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "toolInvocations": self.tool_invocations or [],
            "actionsApplied": bool(self.actions_applied),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
