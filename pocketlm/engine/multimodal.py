"""Image + text prompt evaluation for vision-language backends.

`build()` turns the staged frames and a text prompt into one evaluated prompt
in the engine. Decoding then proceeds through the regular
`StreamingCompletion.step()` loop, starting from an empty batch.
"""

from __future__ import annotations

import logging
from typing import Any

from .completion import SEQ_ID, StreamingCompletion
from .conversation import Conversation
from .errors import MultimodalBuildFailure, TemplateRenderError
from .frames import FrameBuffer

logger = logging.getLogger(__name__)


class MultimodalPipeline:
    def __init__(
        self,
        backend: Any,
        conversation: Conversation,
        completion: StreamingCompletion,
        frames: FrameBuffer | None = None,
    ) -> None:
        self._backend = backend
        self._conversation = conversation
        self._completion = completion
        self._frames = frames if frames is not None else FrameBuffer()

    @property
    def frames(self) -> FrameBuffer:
        return self._frames

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    def add_frame(self, pixels: bytes | bytearray | memoryview, width: int, height: int, channels: int = 3) -> bool:
        return self._frames.add(pixels, width, height, channels)

    def clear_frames(self) -> None:
        self._frames.clear()

    def build(self, text_prompt: str) -> bool:
        """Evaluate the staged frames together with `text_prompt`.

        Returns False, without raising, when there is nothing to build or the
        backend rejects the images. Frames stay staged either way.
        """
        if not getattr(self._backend, "supports_multimodal", False):
            logger.warning("build() requires a multimodal backend")
            return False
        frames = self._frames.frames
        if not frames:
            logger.warning("build() called with no frames staged")
            return False

        # Any batch left from an earlier turn refers to memory cleared below.
        self._completion.release()
        self._backend.clear_memory(SEQ_ID)
        self._conversation.clear()

        marker = self._backend.media_marker
        self._conversation.append("user", marker * len(frames) + "\n" + text_prompt)
        try:
            prompt = self._conversation.render(add_generation_prompt=True)
        except TemplateRenderError as exc:
            logger.warning("Multimodal prompt rendering failed: %s", exc)
            return False

        bitmaps: list[Any] = []
        try:
            for frame in frames:
                bitmaps.append(self._backend.create_bitmap(frame))
            chunks = self._backend.tokenize_multimodal(prompt, bitmaps)
            n_past = self._backend.evaluate_chunks(chunks, 0, self._backend.n_batch)
        except MultimodalBuildFailure as exc:
            logger.warning("Multimodal build failed: %s", exc)
            return False
        finally:
            for bitmap in bitmaps:
                self._backend.free_bitmap(bitmap)

        logger.debug("Multimodal prompt evaluated: frames=%d n_past=%d", len(frames), n_past)
        self._completion.begin_evaluated_turn()
        return True
