from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from common.clock import Clock
from common.ids import generate_id

PLACEHOLDER_TITLE = "New chat"
TITLE_MAX_CHARS = 30
TITLE_ELLIPSIS = "..."

SEED_CONTENT = "Starting a new chat.\nType a question and press Enter to send."

Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    content: str
    timestamp: int


class ChatSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = PLACEHOLDER_TITLE
    messages: list[Message] = Field(default_factory=list)
    created_at: int = Field(alias="createdAt")
    updated_at: int = Field(alias="updatedAt")

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_record(cls, data: dict) -> "ChatSession":
        return cls.model_validate(data)


def make_message(role: Role, content: str, clock: Clock, message_id: str | None = None) -> Message:
    return Message(
        id=message_id or generate_id(),
        role=role,
        content=content,
        timestamp=clock.now_ms(),
    )


def new_session(clock: Clock, session_id: str | None = None) -> ChatSession:
    now = clock.now_ms()
    seed = Message(id=f"system-{generate_id()}", role="system", content=SEED_CONTENT, timestamp=now)
    return ChatSession(
        id=session_id or generate_id(),
        title=PLACEHOLDER_TITLE,
        messages=[seed],
        created_at=now,
        updated_at=now,
    )


def truncate_title(text: str) -> str:
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return text


def apply_title_rule(session: ChatSession) -> bool:
    """Rename a placeholder-titled session after its first user message.

    Returns True when the title changed. A session is renamed at most once.
    """
    if session.title != PLACEHOLDER_TITLE:
        return False
    first_user = next((m for m in session.messages if m.role == "user"), None)
    if first_user is None:
        return False
    session.title = truncate_title(first_user.content)
    return True
