from __future__ import annotations

from dataclasses import dataclass

import pytest

from pocketlm.engine.errors import DecodeFailure, MultimodalBuildFailure, TemplateRenderError
from pocketlm.engine.types import MultimodalChunks, PromptBatch

BOS = 1
EOS = 2
_BYTE_OFFSET = 1000


@dataclass
class DecodedBatch:
    tokens: list[int]
    positions: list[int]
    logits: list[bool]


class FakeBackend:
    """In-process stand-in for an inference backend.

    Tokens are raw bytes offset by 1000, so every multi-byte character spans
    several tokens. Sampling pops from a scripted queue and returns EOS once
    the queue is empty.
    """

    supports_multimodal = False

    def __init__(self, *, n_ctx: int = 512) -> None:
        self._n_ctx = n_ctx
        self.n_past = 0
        self.script: list[int] = []
        self.decoded: list[DecodedBatch] = []
        self.tokenized: list[str] = []
        self.calls: list[str] = []
        self.sampler: dict | None = None
        self.load_kwargs: dict | None = None
        self.decode_status = 0
        self.raise_on_decode = False
        self.fail_render = False

    # lifecycle

    def load(self, model_path: str, **kwargs) -> None:
        self.load_kwargs = {"model_path": model_path, **kwargs}
        self.calls.append("load")

    def unload(self) -> None:
        self.calls.append("unload")

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    @property
    def n_batch(self) -> int:
        return self._n_ctx

    @property
    def default_chat_template(self):
        return None

    @property
    def model_info(self):
        return {"model_path": "fake"}

    # sampler

    def configure_sampler(self, *, min_p, temperature, top_k=40, seed=None) -> None:
        self.sampler = {"min_p": min_p, "temperature": temperature, "top_k": top_k, "seed": seed}
        self.calls.append("configure_sampler")

    def free_sampler(self) -> None:
        self.calls.append("free_sampler")

    def sample(self) -> int:
        if not self.script:
            return EOS
        return self.script.pop(0)

    def script_text(self, text: str) -> None:
        self.script.extend(_BYTE_OFFSET + b for b in text.encode("utf-8"))
        self.script.append(EOS)

    # text

    def render_chat(self, template, messages, *, add_generation_prompt):
        if self.fail_render:
            raise TemplateRenderError("boom")
        out = "".join(f"<{m['role']}>{m['content']}</{m['role']}>" for m in messages)
        if add_generation_prompt:
            out += "<assistant>"
        return out

    def tokenize(self, text, *, add_special, parse_special):
        self.tokenized.append(text)
        ids = [BOS] if add_special else []
        ids.extend(_BYTE_OFFSET + b for b in text.encode("utf-8"))
        return ids

    def token_to_piece(self, token: int) -> bytes:
        if token >= _BYTE_OFFSET:
            return bytes([token - _BYTE_OFFSET])
        return b""

    def is_eog(self, token: int) -> bool:
        return token == EOS

    # memory

    def decode(self, batch: PromptBatch) -> int:
        if self.raise_on_decode:
            raise DecodeFailure("fake decode failure")
        self.decoded.append(DecodedBatch(list(batch.tokens), list(batch.positions), list(batch.logits)))
        if self.decode_status < 0:
            return self.decode_status
        self.n_past = batch.positions[-1] + 1
        return self.decode_status

    def max_position(self, seq_id: int = 0) -> int:
        return self.n_past - 1

    def clear_memory(self, seq_id: int = 0) -> None:
        self.calls.append("clear_memory")
        self.n_past = 0


class FakeVisionBackend(FakeBackend):
    supports_multimodal = True
    media_marker = "<image>"

    def __init__(self, *, n_ctx: int = 512) -> None:
        super().__init__(n_ctx=n_ctx)
        self.created: list[dict] = []
        self.freed: list[dict] = []
        self.multimodal_prompts: list[str] = []
        self.fail_tokenize = False
        self.fail_evaluate = False

    def create_bitmap(self, frame):
        bitmap = {"size": frame.size}
        self.created.append(bitmap)
        return bitmap

    def free_bitmap(self, bitmap) -> None:
        self.freed.append(bitmap)

    def tokenize_multimodal(self, text, bitmaps):
        self.multimodal_prompts.append(text)
        if self.fail_tokenize:
            raise MultimodalBuildFailure("fake tokenize failure")
        n_tokens = len(text.encode("utf-8")) + 4 * len(bitmaps)
        return MultimodalChunks(inputs=text, n_tokens=n_tokens, n_images=len(bitmaps))

    def evaluate_chunks(self, chunks, start_pos, batch_capacity):
        if self.fail_evaluate:
            raise MultimodalBuildFailure("fake evaluate failure")
        self.n_past = start_pos + chunks.n_tokens
        return self.n_past


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def vision_backend() -> FakeVisionBackend:
    return FakeVisionBackend()
