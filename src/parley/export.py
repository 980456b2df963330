from __future__ import annotations

import logging
import re
from pathlib import Path

from common.jsonio import atomic_write_json
from parley.sessions.schema import ChatSession

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def export_filename(session: ChatSession) -> str:
    slug = _SLUG_RE.sub("-", session.title).lower()
    return f"parley-chat-{slug}.json"


def export_session(session: ChatSession, directory: str | Path = ".") -> Path:
    path = Path(directory) / export_filename(session)
    atomic_write_json(path, session.to_record())
    logger.info(f"Exported session {session.id} to {path}")
    return path
