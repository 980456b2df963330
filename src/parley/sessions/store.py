from __future__ import annotations

import logging

from pydantic import ValidationError as SchemaError

from common.storage import Storage, StorageError
from parley.errors import ChatError, ErrorKind, StorageWriteFailed
from parley.sessions.schema import ChatSession

logger = logging.getLogger(__name__)

HISTORY_KEY = "chat_histories"
CURRENT_KEY = "current_chat_id"


class SessionStore:
    """Durable collection of chat sessions plus the current-session pointer.

    Every mutating call commits the full ``chat_histories`` record before it
    returns. If the commit fails the in-memory mapping is rolled back, so the
    store and its persisted record never disagree about a half-applied change.
    """

    def __init__(self, storage: Storage):
        self.storage = storage
        self._sessions: dict[str, ChatSession] = {}
        self._current_id: str | None = None
        self.load_error: ChatError | None = None
        self._load()

    def _degrade(self, reason: str) -> None:
        logger.warning(f"Session history degraded, starting empty: {reason}")
        self.load_error = ChatError(ErrorKind.PERSISTENCE_DEGRADED, reason)

    def _load(self) -> None:
        try:
            data = self.storage.read(HISTORY_KEY)
        except StorageError as e:
            self._degrade(str(e))
            data = None

        if data is not None and not isinstance(data, list):
            self._degrade(f"{HISTORY_KEY} is not a list")
            data = None

        skipped = 0
        for entry in data or []:
            try:
                session = ChatSession.from_record(entry)
            except (SchemaError, TypeError) as e:
                skipped += 1
                logger.warning(f"Skipping invalid session record: {e}")
                continue
            self._sessions[session.id] = session
        if skipped:
            self.load_error = ChatError(
                ErrorKind.PERSISTENCE_DEGRADED,
                f"{skipped} stored session(s) could not be read",
            )

        try:
            current = self.storage.read(CURRENT_KEY)
        except StorageError as e:
            logger.warning(f"Ignoring unreadable current session pointer: {e}")
            current = None
        self._current_id = current if isinstance(current, str) and current else None

        logger.debug(f"Loaded {len(self._sessions)} session(s), current={self._current_id}")

    def _commit(self) -> None:
        records = [session.to_record() for session in self._sessions.values()]
        self.storage.write(HISTORY_KEY, records)

    def list(self) -> list[ChatSession]:
        return [session.model_copy(deep=True) for session in self._sessions.values()]

    def sorted_by_recent(self) -> list[ChatSession]:
        return sorted(self.list(), key=lambda s: s.updated_at, reverse=True)

    def get(self, session_id: str) -> ChatSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    def contains(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def upsert(self, session: ChatSession) -> None:
        previous = dict(self._sessions)
        self._sessions[session.id] = session.model_copy(deep=True)
        try:
            self._commit()
        except StorageError as e:
            self._sessions = previous
            logger.warning(f"Failed to persist session {session.id}: {e}")
            raise StorageWriteFailed(f"Could not save chat history: {e}") from e

    def remove(self, session_id: str) -> bool:
        if session_id not in self._sessions:
            return False
        previous = dict(self._sessions)
        del self._sessions[session_id]
        try:
            self._commit()
        except StorageError as e:
            self._sessions = previous
            logger.warning(f"Failed to delete session {session_id}: {e}")
            raise StorageWriteFailed(f"Could not delete chat: {e}") from e

        if self._current_id == session_id:
            self._current_id = None
            try:
                self.storage.delete(CURRENT_KEY)
            except StorageError as e:
                logger.warning(f"Failed to clear current session pointer: {e}")
        logger.info(f"Deleted session {session_id}")
        return True

    @property
    def current_id(self) -> str | None:
        return self._current_id

    def set_current_id(self, session_id: str) -> None:
        self._current_id = session_id
        try:
            self.storage.write(CURRENT_KEY, session_id)
        except StorageError as e:
            logger.warning(f"Failed to persist current session pointer: {e}")
            raise StorageWriteFailed(f"Could not save current chat: {e}") from e
