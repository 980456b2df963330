from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from common.clock import Clock, SystemClock
from parley.client.completion import CompletionClient, CompletionResult
from parley.config import ConfigStore, Configuration
from parley.errors import ChatError, ConfigError, StorageWriteFailed, ValidationError
from parley.sessions.schema import (
    ChatSession,
    Message,
    apply_title_rule,
    make_message,
    new_session,
)
from parley.sessions.store import SessionStore

logger = logging.getLogger(__name__)

KEY_SAVED_NOTE = "API key saved. You can start chatting."


class SendState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PendingSend:
    """A send in flight. The result always goes back to ``session_id``."""

    session_id: str
    history: list[Message]
    snapshot: ChatSession
    system_prompt: str
    model: str
    api_key: str = field(repr=False)


class ActiveSession:
    """The one conversation currently being viewed and edited.

    Holds a single working copy of a ChatSession and writes it through to the
    SessionStore after every change. Everything else (messages, title, the
    history list) is derived from that copy on read.
    """

    def __init__(
        self,
        store: SessionStore,
        client: CompletionClient,
        config: Configuration | None = None,
        clock: Clock | None = None,
        config_store: ConfigStore | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config or Configuration()
        self.clock = clock or SystemClock()
        self.config_store = config_store
        self.session: ChatSession | None = None
        self.state = SendState.IDLE
        self.last_outcome: SendState | None = None
        self.credential_required = not self.config.has_credential
        self._pending: PendingSend | None = None
        self._error: ChatError | None = None

    # -- projections -------------------------------------------------------

    @property
    def id(self) -> str:
        return self._require_session().id

    @property
    def title(self) -> str:
        return self._require_session().title

    @property
    def messages(self) -> list[Message]:
        return list(self._require_session().messages)

    @property
    def is_sending(self) -> bool:
        return self.state == SendState.SENDING

    @property
    def pending(self) -> PendingSend | None:
        return self._pending

    @property
    def error(self) -> ChatError | None:
        return self._error

    def consume_error(self) -> ChatError | None:
        error, self._error = self._error, None
        return error

    def sessions(self) -> list[ChatSession]:
        listed = self.store.sorted_by_recent()
        if self.session is None:
            return listed
        merged = [s for s in listed if s.id != self.session.id]
        merged.append(self.session.model_copy(deep=True))
        return sorted(merged, key=lambda s: s.updated_at, reverse=True)

    def can_retry(self) -> bool:
        if self.session is None or self.is_sending:
            return False
        for message in reversed(self.session.messages):
            if message.role == "system":
                continue
            return message.role == "user"
        return False

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> ChatSession:
        current_id = self.store.current_id
        if current_id:
            return self.activate(current_id)
        return self.create_new()

    def activate(self, session_id: str) -> ChatSession:
        self._error = None
        session = self.store.get(session_id)
        if session is None:
            logger.info(f"Session {session_id} not found, creating it")
            session = new_session(self.clock, session_id=session_id)
            self._write(session)
        self.session = session
        self._point_at(session.id)
        return session

    def create_new(self) -> ChatSession:
        self._error = None
        session = new_session(self.clock)
        self._write(session)
        self.session = session
        self._point_at(session.id)
        logger.info(f"Created session {session.id}")
        return session

    def delete(self, session_id: str) -> bool:
        try:
            removed = self.store.remove(session_id)
        except StorageWriteFailed as e:
            self._storage_failed(e, self.session)
            return False
        if self.session is not None and self.session.id == session_id:
            self.create_new()
        return removed

    def update_config(self, **changes) -> Configuration:
        if self.config_store is not None:
            updated = self.config_store.update(self.config, **changes)
        else:
            try:
                updated = Configuration.model_validate({**self.config.model_dump(), **changes})
            except ValueError as e:
                raise ConfigError(str(e)) from e
        self.config = updated
        if "api_key" in changes:
            self.credential_required = not updated.has_credential
            if updated.has_credential and self.session is not None:
                self.session.messages.append(make_message("system", KEY_SAVED_NOTE, self.clock))
                self._touch(self.session)
                self._write(self.session)
        return updated

    # -- sending -----------------------------------------------------------

    def append_user_message(self, text: str) -> CompletionResult | None:
        """Append a user message and ask the endpoint for a reply.

        Returns None when the message is rejected locally; the reason is left
        in the error slot.
        """
        try:
            pending = self.begin_send(text)
        except ValidationError as e:
            self._error = e.to_chat_error()
            return None
        return self._run(pending)

    def retry(self) -> CompletionResult | None:
        """Re-send the unanswered conversation without adding a user message."""
        if self.is_sending:
            self._error = ValidationError("A message is already being sent").to_chat_error()
            return None
        if not self.can_retry():
            self._error = ValidationError("Nothing to retry").to_chat_error()
            return None
        self._error = None
        return self._run(self._open_send())

    def begin_send(self, text: str) -> PendingSend:
        if self.is_sending:
            raise ValidationError("A message is already being sent")
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message is empty")

        session = self._require_session()
        self._error = None
        session.messages.append(make_message("user", text, self.clock))
        apply_title_rule(session)
        self._touch(session)
        self._write(session)
        return self._open_send()

    def finish_send(self, pending: PendingSend, result: CompletionResult) -> ChatSession:
        """Fold a completion result into the session the send started from."""
        target = self._target_for(pending)
        if result.ok:
            target.messages.append(result.message)
            self.last_outcome = SendState.SUCCEEDED
        else:
            error = result.error
            if error.appends_message:
                target.messages.append(
                    make_message("system", f"Error: {error.message}", self.clock)
                )
            if error.requires_credential:
                self.credential_required = True
            self._error = error
            self.last_outcome = SendState.FAILED
            logger.info(f"Send to {pending.session_id} failed: {error.kind.value}")

        self._touch(target)
        self._write(target)
        if self._pending is pending:
            self._pending = None
            self.state = SendState.IDLE
        return target

    def _open_send(self) -> PendingSend:
        session = self._require_session()
        pending = PendingSend(
            session_id=session.id,
            history=list(session.messages),
            snapshot=session.model_copy(deep=True),
            system_prompt=self.config.system_prompt,
            model=self.config.model,
            api_key=self.config.api_key,
        )
        self._pending = pending
        self.state = SendState.SENDING
        return pending

    def _run(self, pending: PendingSend) -> CompletionResult:
        try:
            result = self.client.complete(
                pending.system_prompt, pending.model, pending.history, pending.api_key
            )
        except BaseException:
            self._pending = None
            self.state = SendState.IDLE
            raise
        self.finish_send(pending, result)
        return result

    def _target_for(self, pending: PendingSend) -> ChatSession:
        if self.session is not None and self.session.id == pending.session_id:
            return self.session
        stored = self.store.get(pending.session_id)
        if stored is not None:
            return stored
        logger.info(f"Session {pending.session_id} was deleted during send, restoring it")
        return pending.snapshot.model_copy(deep=True)

    # -- persistence -------------------------------------------------------

    def _touch(self, session: ChatSession) -> None:
        session.updated_at = max(self.clock.now_ms(), session.updated_at + 1)

    def _write(self, session: ChatSession) -> bool:
        try:
            self.store.upsert(session)
        except StorageWriteFailed as e:
            self._storage_failed(e, session)
            return False
        return True

    def _point_at(self, session_id: str) -> None:
        try:
            self.store.set_current_id(session_id)
        except StorageWriteFailed as e:
            self._storage_failed(e, self.session)

    def _storage_failed(self, exc: StorageWriteFailed, session: ChatSession | None) -> None:
        """Record a failed write in the error slot and in memory on ``session``.

        The note is not written here; it reaches disk with the next write that
        succeeds.
        """
        self._error = exc.to_chat_error()
        if session is None:
            return
        note = f"Error: {self._error.message}"
        if session.messages and session.messages[-1].content == note:
            return
        session.messages.append(make_message("system", note, self.clock))
        self._touch(session)

    def _require_session(self) -> ChatSession:
        if self.session is None:
            raise RuntimeError("No active session; call start() first")
        return self.session
