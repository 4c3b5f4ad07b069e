"""
Chat Store — the persistence interface a build session talks to.

Wraps the chat service functions so each call opens its own database
session. Messages are returned as plain dicts (ChatMessage.to_dict()).
"""

from typing import Any, Callable, List, Optional

from services import chat_service


class ChatStore:
    """
    Persist chat sessions and messages for the form builder.

    Args:
        session_factory: An async_sessionmaker; defaults to the app's.
    """

    def __init__(self, session_factory: Optional[Callable[[], Any]] = None) -> None:
        if session_factory is None:
            from database import async_session

            session_factory = async_session
        self._session_factory = session_factory

    async def get_or_create_session(self, form_id: str) -> str:
        """Return the chat session id of a form, creating the session if needed."""
        async with self._session_factory() as session:
            chat_session = await chat_service.get_or_create_session(session, form_id)
            return chat_session.id

    async def get_messages(self, session_id: str) -> List[dict]:
        async with self._session_factory() as session:
            messages = await chat_service.get_messages(session, session_id)
            return [message.to_dict() for message in messages]

    async def save_message(
        self,
        session_id: str,
        role: str,
        text: str,
        invocations: Optional[list] = None,
    ) -> dict:
        async with self._session_factory() as session:
            message = await chat_service.save_message(session, session_id, role, text, invocations)
            return message.to_dict()

    async def mark_applied(self, message_id: str) -> bool:
        """Returns False when no message has that id."""
        async with self._session_factory() as session:
            message = await chat_service.mark_actions_applied(session, message_id)
            return message is not None

    async def clear_history(self, form_id: str) -> int:
        async with self._session_factory() as session:
            return await chat_service.clear_chat_history(session, form_id)
