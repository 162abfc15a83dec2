"""Staging area for image frames awaiting a multimodal build."""

from __future__ import annotations

import logging

from .chat_types import ImageFrame
from .errors import InvalidFrameDimensions

logger = logging.getLogger(__name__)


class FrameBuffer:
    """Ordered, caller-managed sequence of owned RGB frames."""

    def __init__(self) -> None:
        self._frames: list[ImageFrame] = []

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def frames(self) -> tuple[ImageFrame, ...]:
        return tuple(self._frames)

    def add(self, pixels: bytes | bytearray | memoryview, width: int, height: int, channels: int) -> bool:
        """Copy a frame into the buffer.

        Returns False (and leaves the buffer unchanged) when the frame is not
        3-channel or the pixel buffer does not match its dimensions.
        """
        try:
            frame = ImageFrame(pixels=bytes(pixels), width=int(width), height=int(height), channels=int(channels))
        except InvalidFrameDimensions as exc:
            logger.debug("Rejected frame: %s", exc)
            return False
        self._frames.append(frame)
        return True

    def clear(self) -> None:
        self._frames.clear()
