"""Session parameters and engine-facing batch types.

These types are used by the sessions and the adapters. They are independent
of any host/binding layer: every value is passed in explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Used when neither the caller nor the model metadata provide a context size.
DEFAULT_CONTEXT_SIZE = 1024

DEFAULT_TOP_K = 40

# ChatML, used when neither the caller nor the model provide a chat template.
DEFAULT_CHAT_TEMPLATE = (
    "{% for message in messages %}"
    "{% if loop.first and messages[0]['role'] != 'system' %}"
    "{{ '<|im_start|>system\nYou are a helpful assistant.<|im_end|>\n' }}"
    "{% endif %}"
    "{{ '<|im_start|>' + message['role'] + '\n' + message['content'] + '<|im_end|>' + '\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\n' }}{% endif %}"
)


def _check_sampling(min_p: float, temperature: float) -> None:
    if not 0.0 <= float(min_p) <= 1.0:
        raise ValueError("'min_p' must be in [0, 1].")
    if float(temperature) < 0.0:
        raise ValueError("'temperature' must be >= 0.")


def _check_positive(value: int | None, name: str) -> None:
    if value is None:
        return
    if isinstance(value, bool) or int(value) <= 0:
        raise ValueError(f"'{name}' must be a positive integer.")


@dataclass(frozen=True)
class InferenceParams:
    """Configuration for a text chat session.

    Notes:
    - `context_size=None` means "use the model's trained context length".
    - `chat_template=None` means "use the model's template, else ChatML".
    - `use_mmap`/`use_mlock` are forwarded to backends that support them.
    """

    min_p: float = 0.1
    temperature: float = 0.8
    store_chats: bool = True
    context_size: int | None = None
    chat_template: str | None = None
    n_threads: int = 4
    use_mmap: bool = True
    use_mlock: bool = False
    device: str | None = None
    dtype: str | None = None
    seed: int | None = None

    def validate(self) -> None:
        _check_sampling(self.min_p, self.temperature)
        _check_positive(self.context_size, "context_size")
        _check_positive(self.n_threads, "n_threads")


@dataclass(frozen=True)
class MultimodalParams:
    """Configuration for a vision-language session.

    `mmproj_path` points at the multimodal projector / processor files; when
    None they are loaded from the model path. Multimodal sessions never
    persist chat history across turns.
    """

    mmproj_path: str | None = None
    min_p: float = 0.05
    temperature: float = 0.2
    n_gpu_layers: int = 35
    context_size: int | None = None
    n_threads: int = 4
    device: str | None = None
    dtype: str | None = None
    seed: int | None = None

    def validate(self) -> None:
        _check_sampling(self.min_p, self.temperature)
        _check_positive(self.context_size, "context_size")
        _check_positive(self.n_threads, "n_threads")
        if self.n_gpu_layers < 0:
            raise ValueError("'n_gpu_layers' must be >= 0.")


@dataclass
class PromptBatch:
    """Tokens the engine must evaluate next.

    Each token carries its absolute position in the context window, the
    destination sequence (always 0) and whether logits should be kept for it.
    """

    tokens: list[int] = field(default_factory=list)
    positions: list[int] = field(default_factory=list)
    seq_ids: list[int] = field(default_factory=list)
    logits: list[bool] = field(default_factory=list)
    capacity: int | None = None

    @property
    def n_tokens(self) -> int:
        return len(self.tokens)

    def add(self, token: int, pos: int, *, seq_id: int = 0, logits: bool = False) -> None:
        if self.capacity is not None and self.n_tokens >= self.capacity:
            raise ValueError(f"PromptBatch is full (capacity={self.capacity}).")
        self.tokens.append(int(token))
        self.positions.append(int(pos))
        self.seq_ids.append(int(seq_id))
        self.logits.append(bool(logits))

    def clear(self) -> None:
        self.tokens.clear()
        self.positions.clear()
        self.seq_ids.clear()
        self.logits.clear()

    @classmethod
    def for_prompt(cls, tokens: list[int], *, start_pos: int) -> "PromptBatch":
        """Batch for a prompt slice; only the last token requests logits."""
        batch = cls(capacity=max(len(tokens), 1))
        last = len(tokens) - 1
        for i, token in enumerate(tokens):
            batch.add(token, start_pos + i, logits=i == last)
        return batch

    @classmethod
    def single_slot(cls) -> "PromptBatch":
        """Empty batch with room for one token (the decode-step shape)."""
        return cls(capacity=1)


@dataclass
class MultimodalChunks:
    """Backend-specific result of tokenizing text together with images."""

    inputs: Any
    n_tokens: int
    n_images: int
