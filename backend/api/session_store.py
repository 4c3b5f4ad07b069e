"""
In-memory registry of open build sessions.

Holds one FormBuildSession per form id for as long as the process lives.
Sessions are cheap to rebuild: the chat history comes back from the
database on the next open.
"""

from typing import Dict, List, Optional
import threading

from services.build_session import FormBuildSession


class BuildSessionRegistry:
    """Thread-safe in-memory store of build sessions keyed by form id."""

    def __init__(self) -> None:
        self._store: Dict[str, FormBuildSession] = {}
        self._lock = threading.Lock()

    def add(self, session: FormBuildSession) -> FormBuildSession:
        """Register a session unless one exists for its form; return the registered one."""
        with self._lock:
            return self._store.setdefault(session.form_id, session)

    def get(self, form_id: str) -> Optional[FormBuildSession]:
        with self._lock:
            return self._store.get(form_id)

    def delete(self, form_id: str) -> None:
        with self._lock:
            self._store.pop(form_id, None)

    def form_ids(self) -> List[str]:
        with self._lock:
            return list(self._store)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


# Singleton instance shared across the application
build_sessions = BuildSessionRegistry()
