"""Streaming, step-at-a-time completion over an inference backend.

The caller drives generation: every `step()` performs exactly one unit of
engine work (decode the pending batch, sample one token) and returns either
new text, an empty string when the token only completed part of a UTF-8
character, or None at end of generation.

It deliberately contains no threading or host-binding code.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .conversation import Conversation
from .errors import ContextWindowExceeded, DecodeFailure
from .metrics import GenerationMetrics
from .types import PromptBatch
from .utf8 import Utf8Reassembler

logger = logging.getLogger(__name__)

# All generation happens on a single sequence.
SEQ_ID = 0


class CompletionState(enum.Enum):
    IDLE = "idle"
    PROMPT_BUILT = "prompt_built"
    DECODING = "decoding"
    EMITTED_TOKEN = "emitted_token"
    END_OF_GENERATION = "end_of_generation"


@dataclass
class GenerationState:
    """Mutable state of the active turn."""

    response_parts: list[str] = field(default_factory=list)
    reassembler: Utf8Reassembler = field(default_factory=Utf8Reassembler)
    metrics: GenerationMetrics = field(default_factory=GenerationMetrics)
    context_used: int = 0

    @property
    def response(self) -> str:
        return "".join(self.response_parts)

    def reset_response(self) -> None:
        if self.reassembler.awaiting:
            logger.debug("Discarding %d incomplete UTF-8 bytes at end of turn", len(self.reassembler.pending))
        self.response_parts.clear()
        self.reassembler.reset()


class StreamingCompletion:
    """Owns the per-step decode loop and the single live PromptBatch.

    Thread Safety:
        Not thread-safe. The backend, its sampler and the batch must only be
        touched by one caller at a time.
    """

    def __init__(self, backend: Any, conversation: Conversation, *, store_chats: bool) -> None:
        self._backend = backend
        self._conversation = conversation
        self._store_chats = bool(store_chats)
        self._state = CompletionState.IDLE
        self._batch: PromptBatch | None = None
        self._gen = GenerationState()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> CompletionState:
        return self._state

    @property
    def batch(self) -> PromptBatch | None:
        return self._batch

    @property
    def metrics(self) -> GenerationMetrics:
        return self._gen.metrics

    @property
    def context_used(self) -> int:
        return self._gen.context_used

    @property
    def response(self) -> str:
        """Text produced so far in the active turn."""
        return self._gen.response

    # -------------------------------------------------------------------------
    # Turn lifecycle
    # -------------------------------------------------------------------------

    def start(self, query: str) -> PromptBatch:
        """Append `query` as a user turn and build the batch for the unsent prompt."""
        if self._state is not CompletionState.IDLE:
            logger.debug("Starting a completion from state %s; previous turn is abandoned", self._state.value)

        if not self._store_chats:
            # History is not carried over, so neither is its KV.
            self._backend.clear_memory(SEQ_ID)

        self._gen.metrics.reset()
        self._gen.reset_response()

        self._conversation.append("user", query)
        prompt = self._conversation.render_and_diff()
        tokens = list(self._backend.tokenize(prompt, add_special=True, parse_special=True))

        if not self._store_chats:
            self._conversation.commit_turn(persist=False)

        start_pos = self._refresh_context_used()
        self._batch = PromptBatch.for_prompt(tokens, start_pos=start_pos)
        self._state = CompletionState.PROMPT_BUILT
        logger.debug("Prompt batch built: tokens=%d start_pos=%d", len(tokens), start_pos)
        return self._batch

    def begin_evaluated_turn(self) -> None:
        """Prepare to decode after the prompt was evaluated out of band.

        Used by the multimodal pipeline: the engine already holds the prompt
        and its logits, so the first `step()` only samples.
        """
        self._gen.metrics.reset()
        self._gen.reset_response()
        self._refresh_context_used()
        self._batch = PromptBatch.single_slot()
        self._state = CompletionState.PROMPT_BUILT

    def step(self) -> str | None:
        """Run one decode + sample step.

        Returns:
            New text, "" when the token is buffered (call again), or None at
            end of generation (also when no completion is active).

        Raises:
            ContextWindowExceeded: The pending batch does not fit; raised
                before the engine is touched.
            DecodeFailure: The engine rejected the batch.
        """
        batch = self._batch
        if batch is None:
            return None

        context_size = int(self._backend.n_ctx)
        context_used = self._refresh_context_used()
        if context_used + batch.n_tokens > context_size:
            raise ContextWindowExceeded(context_used, batch.n_tokens, context_size)

        self._state = CompletionState.DECODING
        started = time.perf_counter()
        if batch.n_tokens > 0:
            status = self._backend.decode(batch)
            if status < 0:
                raise DecodeFailure(f"decode() failed with status {status}")
            if status > 0:
                logger.warning("decode() returned warning status %d", status)

        token = int(self._backend.sample())
        if self._backend.is_eog(token):
            return self._finish()

        piece = self._backend.token_to_piece(token)
        self._gen.metrics.record(int((time.perf_counter() - started) * 1e6))

        context_used = self._refresh_context_used()
        batch.clear()
        batch.add(token, context_used, seq_id=SEQ_ID, logits=True)
        self._state = CompletionState.EMITTED_TOKEN

        text = self._gen.reassembler.feed(piece)
        if text is None:
            return ""
        self._gen.response_parts.append(text)
        return text

    def stop(self) -> None:
        """End the turn, keeping a partial response when chats are stored."""
        if self._store_chats and self._gen.response_parts:
            self._conversation.append("assistant", self._gen.response)
        self._gen.reset_response()
        self._batch = None
        self._state = CompletionState.IDLE

    def release(self) -> None:
        """Drop the live batch (session teardown)."""
        self._batch = None
        self._state = CompletionState.IDLE

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _finish(self) -> None:
        self._conversation.append("assistant", self._gen.response)
        self._gen.reset_response()
        self._batch = None
        self._state = CompletionState.END_OF_GENERATION
        self._refresh_context_used()
        logger.debug(
            "End of generation: tokens=%d context_used=%d",
            self._gen.metrics.tokens_generated,
            self._gen.context_used,
        )
        return None

    def _refresh_context_used(self) -> int:
        self._gen.context_used = int(self._backend.max_position(SEQ_ID)) + 1
        return self._gen.context_used
