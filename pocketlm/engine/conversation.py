"""Conversation history and incremental prompt formatting.

The whole history is re-rendered through the chat template on every turn, but
only the text past `prev_len` is handed out for tokenization. Everything
before it is already represented in the engine's sequence memory.
"""

from __future__ import annotations

import logging
from typing import Any

from .chat_types import ChatMessage, Role
from .errors import TemplateRenderError

logger = logging.getLogger(__name__)


class Conversation:
    """Ordered chat history plus the already-sent prefix offset.

    Invariant: `prev_len <= len(rendered)`.
    """

    def __init__(self, backend: Any, template: str) -> None:
        self._backend = backend
        self._template = template
        self._messages: list[ChatMessage] = []
        self._rendered = ""
        self._prev_len = 0

    @property
    def template(self) -> str:
        return self._template

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def rendered(self) -> str:
        return self._rendered

    @property
    def prev_len(self) -> int:
        return self._prev_len

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, role: Role, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        self._messages.append(message)
        return message

    def clear(self) -> None:
        self._messages.clear()
        self._rendered = ""
        self._prev_len = 0

    def render(self, *, add_generation_prompt: bool = True) -> str:
        """Render the full history and cache the result."""
        text = self._render(add_generation_prompt)
        self._rendered = text
        return text

    def render_and_diff(self) -> str:
        """Render with a generation prompt and return only the unsent suffix.

        The returned slice counts as sent: calling this again without a new
        message returns an empty string.
        """
        previous = self._rendered[: self._prev_len]
        text = self.render(add_generation_prompt=True)
        if previous and not text.startswith(previous):
            logger.warning(
                "Chat template output is not prefix-stable; prompt diff at offset %d may be inexact",
                self._prev_len,
            )
        start = min(self._prev_len, len(text))
        self._prev_len = len(text)
        return text[start:]

    def commit_turn(self, *, persist: bool) -> None:
        """Finalize a turn.

        With `persist`, the history is re-rendered without a generation prompt
        and `prev_len` moves to its end, so the next turn only sends what
        follows. Otherwise history is dropped and `prev_len` returns to 0.
        """
        if not persist:
            self.clear()
            return
        self.render(add_generation_prompt=False)
        self._prev_len = len(self._rendered)

    def _render(self, add_generation_prompt: bool) -> str:
        messages = [m.as_template_dict() for m in self._messages]
        text = self._backend.render_chat(
            self._template,
            messages,
            add_generation_prompt=add_generation_prompt,
        )
        if not isinstance(text, str):
            raise TemplateRenderError(f"Chat template produced {type(text).__name__}, expected str.")
        return text
