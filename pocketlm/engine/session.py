"""Chat sessions over a loaded backend.

A session bundles one adapter (model, context, sampler) with its conversation
history and the streaming completion loop. `ChatSession` serves text chats;
`MultimodalSession` evaluates staged image frames with a prompt and never
keeps history across turns.

It deliberately contains no host-binding code: all configuration is passed
in explicitly.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterator

from .chat_types import ChatMessage, Role
from .completion import StreamingCompletion
from .conversation import Conversation
from .multimodal import MultimodalPipeline
from .registry import get_adapter
from .types import DEFAULT_CHAT_TEMPLATE, DEFAULT_TOP_K, InferenceParams, MultimodalParams

logger = logging.getLogger(__name__)


class _Session:
    """Shared plumbing of text and multimodal sessions.

    Thread-safety:
        Public calls are serialized with a re-entrant lock. A stream takes the
        lock once per step, so other threads may interleave between tokens.
    """

    def __init__(self, backend: Any, *, template: str, store_chats: bool) -> None:
        self._backend = backend
        self._store_chats = bool(store_chats)
        self._lock = threading.RLock()
        self._conversation = Conversation(backend, template)
        self._completion = StreamingCompletion(backend, self._conversation, store_chats=store_chats)
        self._closed = False

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def backend(self) -> Any:
        return self._backend

    @property
    def store_chats(self) -> bool:
        return self._store_chats

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> tuple[ChatMessage, ...]:
        return self._conversation.messages

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def response_generation_speed(self) -> float:
        """Decode throughput of the current/last turn in tokens per second."""
        with self._lock:
            self._ensure_loaded()
            return self._completion.metrics.tokens_per_second

    @property
    def context_size_used(self) -> int:
        """Positions occupied in the context window."""
        with self._lock:
            self._ensure_loaded()
            return self._completion.context_used

    @property
    def context_size(self) -> int:
        with self._lock:
            self._ensure_loaded()
            return int(self._backend.n_ctx)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def add_chat_message(self, content: str, role: Role) -> None:
        with self._lock:
            self._ensure_loaded()
            self._conversation.append(role, content)

    def add_user_message(self, content: str) -> None:
        self.add_chat_message(content, "user")

    def add_system_prompt(self, content: str) -> None:
        self.add_chat_message(content, "system")

    def add_assistant_message(self, content: str) -> None:
        self.add_chat_message(content, "assistant")

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def completion_step(self) -> str | None:
        """One decode step: text, "" while a character is incomplete, None at the end."""
        with self._lock:
            self._ensure_loaded()
            return self._completion.step()

    def stop_completion(self) -> None:
        with self._lock:
            self._ensure_loaded()
            self._completion.stop()

    def _drain(self) -> Iterator[str]:
        try:
            while True:
                piece = self.completion_step()
                if piece is None:
                    break
                if piece:
                    yield piece
        finally:
            with self._lock:
                if not self._closed:
                    self.stop_completion()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release the sampler, the batch, then the context and model. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._backend.free_sampler()
            self._completion.release()
            self._backend.unload()
            logger.debug("Session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_loaded(self) -> None:
        if self._closed:
            raise RuntimeError("Model is not loaded. The session was closed.")


def _configure(adapter: Any, *, min_p: float, temperature: float, seed: int | None) -> None:
    adapter.configure_sampler(min_p=min_p, temperature=temperature, top_k=DEFAULT_TOP_K, seed=seed)


class ChatSession(_Session):
    """Text chat session with optional history persistence."""

    @classmethod
    def load(
        cls,
        model_path: str,
        params: InferenceParams | None = None,
        *,
        backend: str = "transformers",
    ) -> "ChatSession":
        """Load `model_path` into a fresh backend and return a ready session.

        Raises:
            ModelLoadError: The backend could not load the model.
            ValueError: Invalid `params` or unknown backend.
        """
        params = params or InferenceParams()
        params.validate()
        adapter = get_adapter(backend)
        adapter.load(
            model_path,
            context_size=params.context_size,
            n_threads=params.n_threads,
            use_mmap=params.use_mmap,
            use_mlock=params.use_mlock,
            device=params.device,
            dtype=params.dtype,
        )
        try:
            _configure(adapter, min_p=params.min_p, temperature=params.temperature, seed=params.seed)
            template = params.chat_template or adapter.default_chat_template or DEFAULT_CHAT_TEMPLATE
        except Exception:
            adapter.unload()
            raise
        logger.info("Chat session ready: n_ctx=%d store_chats=%s", adapter.n_ctx, params.store_chats)
        return cls(adapter, template=template, store_chats=params.store_chats)

    def start_completion(self, query: str) -> None:
        """Append `query` as a user turn and queue its prompt for decoding."""
        with self._lock:
            self._ensure_loaded()
            self._completion.start(query)

    def stop_completion(self) -> None:
        """End the turn; with `store_chats` the reply is kept for the next prompt."""
        with self._lock:
            self._ensure_loaded()
            self._completion.stop()
            self._conversation.commit_turn(persist=self._store_chats)

    def stream_response(self, query: str) -> Iterator[str]:
        """Yield the reply to `query` piece by piece."""
        self.start_completion(query)
        return self._drain()

    def get_response(self, query: str) -> str:
        with self._lock:
            return "".join(self.stream_response(query))


class MultimodalSession(_Session):
    """Vision-language session: stage frames, `build()` with a prompt, then stream."""

    def __init__(self, backend: Any, *, template: str) -> None:
        super().__init__(backend, template=template, store_chats=False)
        self._pipeline = MultimodalPipeline(backend, self._conversation, self._completion)

    @classmethod
    def load(
        cls,
        model_path: str,
        params: MultimodalParams | None = None,
        *,
        backend: str = "transformers-vision",
    ) -> "MultimodalSession":
        params = params or MultimodalParams()
        params.validate()
        adapter = get_adapter(backend)
        if not getattr(adapter, "supports_multimodal", False):
            raise ValueError(f"Backend {backend!r} does not support images.")
        adapter.load(
            model_path,
            mmproj_path=params.mmproj_path,
            context_size=params.context_size,
            n_threads=params.n_threads,
            n_gpu_layers=params.n_gpu_layers,
            device=params.device,
            dtype=params.dtype,
        )
        try:
            _configure(adapter, min_p=params.min_p, temperature=params.temperature, seed=params.seed)
            template = adapter.default_chat_template or DEFAULT_CHAT_TEMPLATE
        except Exception:
            adapter.unload()
            raise
        logger.info("Multimodal session ready: n_ctx=%d", adapter.n_ctx)
        return cls(adapter, template=template)

    @property
    def frame_count(self) -> int:
        with self._lock:
            return self._pipeline.frame_count

    def add_frame(self, pixels: bytes | bytearray | memoryview, width: int, height: int, channels: int = 3) -> bool:
        """Stage a copy of a frame. Returns False for non-RGB or mis-sized frames."""
        with self._lock:
            self._ensure_loaded()
            return self._pipeline.add_frame(pixels, width, height, channels)

    def add_frame_rgb(self, pixels: bytes | bytearray | memoryview, width: int, height: int) -> bool:
        return self.add_frame(pixels, width, height, 3)

    def clear_frames(self) -> None:
        with self._lock:
            self._pipeline.clear_frames()

    def build(self, prompt: str) -> bool:
        """Evaluate the staged frames with `prompt`; decoding starts on the next step."""
        with self._lock:
            self._ensure_loaded()
            return self._pipeline.build(prompt)

    def stream_response(self) -> Iterator[str]:
        """Yield the reply to the last successful `build()`."""
        with self._lock:
            self._ensure_loaded()
        return self._drain()

    def get_response(self) -> str:
        with self._lock:
            return "".join(self.stream_response())

    def close(self) -> None:
        with self._lock:
            self._pipeline.clear_frames()
            super().close()
