"""
Chat Service — CRUD operations for persisted chat sessions and messages.

Async functions over an AsyncSession, one per persistence operation the
build session needs.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.chat import ChatMessage, ChatSession


async def get_or_create_session(
    session: AsyncSession,
    form_id: str,
    user_id: Optional[str] = None,
) -> ChatSession:
    """Return the chat session of a form, creating it on first use."""
    result = await session.execute(select(ChatSession).where(ChatSession.form_id == form_id))
    chat_session = result.scalar_one_or_none()
    if chat_session is not None:
        return chat_session

    chat_session = ChatSession(form_id=form_id, user_id=user_id)
    session.add(chat_session)
    await session.commit()
    await session.refresh(chat_session)
    return chat_session


async def get_messages(session: AsyncSession, session_id: str) -> List[ChatMessage]:
    """List the messages of a chat session in send order."""
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.sequence.asc())
    )
    return list(result.scalars().all())


async def save_message(
    session: AsyncSession,
    session_id: str,
    role: str,
    content: str,
    tool_invocations: Optional[list] = None,
) -> ChatMessage:
    """Append a message to a chat session and bump the session's updated_at."""
    result = await session.execute(
        select(func.max(ChatMessage.sequence)).where(ChatMessage.session_id == session_id)
    )
    last_sequence = result.scalar()

    message = ChatMessage(
        session_id=session_id,
        sequence=(last_sequence or 0) + 1,
        role=role,
        content=content,
        tool_invocations=tool_invocations or None,
        actions_applied=False,
    )
    session.add(message)
    await session.execute(
        update(ChatSession)
        .where(ChatSession.id == session_id)
        .values(updated_at=datetime.now(timezone.utc))
    )
    await session.commit()
    await session.refresh(message)
    return message


async def mark_actions_applied(session: AsyncSession, message_id: str) -> Optional[ChatMessage]:
    """Flag an assistant message's tool invocations as applied."""
    result = await session.execute(select(ChatMessage).where(ChatMessage.id == message_id))
    message = result.scalar_one_or_none()
    if message is None:
        return None

    message.actions_applied = True
    await session.commit()
    await session.refresh(message)
    return message


async def clear_chat_history(session: AsyncSession, form_id: str) -> int:
    """
    Delete the chat session of a form together with all its messages.

    Returns:
        The number of deleted messages.
    """
    result = await session.execute(select(ChatSession.id).where(ChatSession.form_id == form_id))
    session_ids = list(result.scalars().all())
    if not session_ids:
        return 0

    deleted = await session.execute(
        delete(ChatMessage).where(ChatMessage.session_id.in_(session_ids))
    )
    await session.execute(delete(ChatSession).where(ChatSession.id.in_(session_ids)))
    await session.commit()
    return deleted.rowcount or 0
