"""Core chat and media types.

These types are internal to the library and are intentionally decoupled from
any particular inference backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .errors import InvalidFrameDimensions


Role = Literal["system", "user", "assistant"]

ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})

# Only RGB frames are accepted by the multimodal pipeline.
FRAME_CHANNELS = 3


@dataclass(frozen=True)
class ChatMessage:
    """A single conversation turn. Immutable once created."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown chat role {self.role!r}. Expected one of: {', '.join(sorted(ROLES))}")
        if self.content is None:
            raise ValueError("Chat message content must not be None.")

    def as_template_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ImageFrame:
    """An owned copy of one raw RGB frame.

    `pixels` is row-major, interleaved, `width * height * channels` bytes.
    """

    pixels: bytes
    width: int
    height: int
    channels: int = FRAME_CHANNELS

    def __post_init__(self) -> None:
        if self.channels != FRAME_CHANNELS:
            raise InvalidFrameDimensions(f"Expected {FRAME_CHANNELS} channels, got {self.channels}.")
        if self.width <= 0 or self.height <= 0:
            raise InvalidFrameDimensions(f"Frame dimensions must be positive, got {self.width}x{self.height}.")
        expected = self.width * self.height * self.channels
        if len(self.pixels) != expected:
            raise InvalidFrameDimensions(
                f"Pixel buffer has {len(self.pixels)} bytes, expected {expected} "
                f"({self.width}x{self.height}x{self.channels})."
            )

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)
