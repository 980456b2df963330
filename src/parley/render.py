from __future__ import annotations

import logging

from rich.console import Console, ConsoleOptions, RenderableType, RenderResult
from rich.markdown import Markdown
from rich.text import Text

logger = logging.getLogger(__name__)

CODE_THEME = "monokai"


class SafeMarkdown:
    """Markdown that shows the raw text if rich fails while laying it out."""

    def __init__(self, text: str, markdown: Markdown):
        self.text = text
        self.markdown = markdown

    def __rich_console__(self, console: Console, options: ConsoleOptions) -> RenderResult:
        try:
            segments = list(console.render(self.markdown, options))
        except Exception as e:
            logger.debug(f"Markdown rendering failed, showing raw text: {e}")
            yield Text(self.text)
            return
        yield from segments


def render(text: str) -> RenderableType:
    """Turn message markdown into a rich renderable. Falls back to plain text."""
    if not text:
        return Text("")
    try:
        markdown = Markdown(text, code_theme=CODE_THEME)
    except Exception as e:
        logger.debug(f"Markdown parsing failed, showing raw text: {e}")
        return Text(text)
    return SafeMarkdown(text, markdown)
