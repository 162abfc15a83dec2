"""Hugging Face Transformers backends.

`TransformersAdapter` runs any `AutoModelForCausalLM` checkpoint one batch at
a time over a single-sequence `DynamicCache`. `TransformersVisionAdapter`
adds an `AutoProcessor` and an `AutoModelForImageTextToText` model so images
can be evaluated together with the prompt.
"""

from __future__ import annotations

import functools
import logging
import re
from typing import TYPE_CHECKING, Any, Sequence

import jinja2

from ..chat_types import ImageFrame
from ..errors import DecodeFailure, ModelLoadError, MultimodalBuildFailure, TemplateRenderError
from ..types import DEFAULT_CONTEXT_SIZE, MultimodalChunks, PromptBatch
from .base import BaseAdapter
from .sampling import SamplerChain

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)

# Tokens that end an assistant turn in common chat formats.
_END_OF_TURN_TOKENS = (
    "<|im_end|>",
    "<|eot_id|>",
    "<|endoftext|>",
    "<end_of_turn>",
    "<end_of_utterance>",
)

_BYTE_FALLBACK_RE = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")

# SentencePiece word-boundary marker.
_SPIECE_UNDERLINE = "▁"


# -----------------------------------------------------------------------------
# Token pieces
# -----------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def bytes_to_unicode() -> dict[int, str]:
    """GPT-2 bytes_to_unicode mapping used by byte-level BPE vocabularies."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("\xa1"), ord("\xac") + 1))
        + list(range(ord("\xae"), ord("\xff") + 1))
    )
    cs = list(bs)
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return {b: chr(c) for b, c in zip(bs, cs)}


@functools.lru_cache(maxsize=1)
def unicode_to_bytes() -> dict[str, int]:
    return {v: k for k, v in bytes_to_unicode().items()}


def piece_bytes(token: str | None, *, byte_level: bool, special: bool = False) -> bytes:
    """Raw bytes for a vocabulary entry.

    Special tokens are returned as their literal text. Byte-level vocabularies
    map each character back through the GPT-2 table, so a piece can end in
    the middle of a UTF-8 sequence. SentencePiece byte-fallback entries
    (`<0xE4>`) yield a single byte.
    """
    if not token:
        return b""
    if special:
        return token.encode("utf-8")
    match = _BYTE_FALLBACK_RE.match(token)
    if match is not None:
        return bytes([int(match.group(1), 16)])
    if byte_level:
        decoder = unicode_to_bytes()
        if all(ch in decoder for ch in token):
            return bytes(decoder[ch] for ch in token)
    return token.replace(_SPIECE_UNDERLINE, " ").encode("utf-8")


def _is_byte_level(tokenizer: Any) -> bool:
    backend = getattr(tokenizer, "backend_tokenizer", None)
    decoder = getattr(backend, "decoder", None)
    if decoder is not None and "ByteLevel" in repr(decoder):
        return True
    return "Ġ" in getattr(tokenizer, "get_vocab", dict)()


# -----------------------------------------------------------------------------
# Text backend
# -----------------------------------------------------------------------------


class TransformersAdapter(BaseAdapter):
    """
    Text-only backend over Hugging Face Transformers.

    KV memory is a `DynamicCache` holding a single sequence; `_n_past` is the
    number of positions it covers. Logits of the last requested position are
    kept for `sample()`.

    Thread Safety:
        Not thread-safe. Sessions serialize access.
    """

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None
        self._n_ctx: int = 0
        self._n_batch: int = 0
        self._cache = None
        self._n_past: int = 0
        self._logits: torch.Tensor | None = None
        self._sampler: SamplerChain | None = None
        self._eog_ids: frozenset[int] = frozenset()
        self._special_ids: frozenset[int] = frozenset()
        self._byte_level: bool = False
        self._pieces: dict[int, bytes] = {}

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def device(self) -> str:
        return self._device

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    @property
    def n_batch(self) -> int:
        return self._n_batch

    @property
    def default_chat_template(self) -> str | None:
        template = getattr(self._tokenizer, "chat_template", None)
        if isinstance(template, dict):
            template = template.get("default")
        return template or None

    @property
    def model_info(self) -> dict[str, Any]:
        """Return model metadata."""
        return {
            "model_path": self._model_path,
            "device": self._device,
            "dtype": str(self._dtype),
            "loaded": self._model is not None,
            "n_ctx": self._n_ctx,
            "n_past": self._n_past,
            "multimodal": self.supports_multimodal,
        }

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, **kwargs) -> None:
        """Load a causal LM and its tokenizer.

        Args:
            model_path: Path to the model (local or HF hub).
            context_size: Context window; None uses the model's trained length.
            n_threads: Intra-op CPU threads (default: 4).
            use_mmap: Accepted for parity with GGUF runtimes; safetensors
                checkpoints are always memory-mapped.
            use_mlock: Accepted for parity with GGUF runtimes; no effect.
            device: Torch device (default: CUDA, then MPS, then CPU).
            dtype: Torch dtype or name (default: fp16 on GPU, fp32 on CPU).
            n_batch: Maximum tokens per decode call (default: context size).
            **kwargs: Additional kwargs passed to from_pretrained().
        """
        from transformers import AutoModelForCausalLM, AutoTokenizer

        from ...runtime import resolve_device

        context_size, n_batch = self._pop_common(kwargs)
        self._device = resolve_device(kwargs.pop("device", None))
        trust_remote_code = bool(kwargs.pop("trust_remote_code", False))
        self._model_path = model_path
        self._prepare_runtime(kwargs)

        try:
            self._tokenizer = AutoTokenizer.from_pretrained(model_path, trust_remote_code=trust_remote_code)
            self._model = AutoModelForCausalLM.from_pretrained(
                model_path,
                torch_dtype=self._dtype,
                trust_remote_code=trust_remote_code,
                **kwargs,
            )
        except (OSError, ValueError, ImportError, RuntimeError) as exc:
            self.unload()
            raise ModelLoadError(f"Failed to load model from {model_path!r}: {exc}") from exc

        self._finish_load(self._model.config, context_size, n_batch)

    def unload(self) -> None:
        """Free KV memory, then the model, and release GPU memory."""
        import gc

        import torch

        self._cache = None
        self._logits = None
        self._n_past = 0
        had_model = self._model is not None

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None
        self._pieces.clear()

        if had_model:
            gc.collect()
            if torch.cuda.is_available():
                torch.cuda.empty_cache()
            logger.info("Unloaded model %s", self._model_path)

    # -------------------------------------------------------------------------
    # Sampler
    # -------------------------------------------------------------------------

    def configure_sampler(
        self,
        *,
        min_p: float,
        temperature: float,
        top_k: int = 40,
        seed: int | None = None,
    ) -> None:
        self._sampler = SamplerChain(min_p=float(min_p), temperature=float(temperature), top_k=int(top_k), seed=seed)

    def free_sampler(self) -> None:
        self._sampler = None

    def sample(self) -> int:
        self._ensure_loaded()
        if self._sampler is None:
            raise RuntimeError("Sampler not configured. Call configure_sampler() first.")
        if self._logits is None:
            raise RuntimeError("No logits available; decode a batch first.")
        return self._sampler(self._logits)

    # -------------------------------------------------------------------------
    # Text
    # -------------------------------------------------------------------------

    def render_chat(
        self,
        template: str,
        messages: Sequence[dict[str, str]],
        *,
        add_generation_prompt: bool,
    ) -> str:
        self._ensure_loaded()
        return self._apply_template(self._tokenizer, template, list(messages), add_generation_prompt)

    def tokenize(self, text: str, *, add_special: bool, parse_special: bool) -> list[int]:
        self._ensure_loaded()
        if not text:
            return []
        bos = getattr(self._tokenizer, "bos_token", None)
        if add_special and bos and text.startswith(bos):
            # The template already emitted BOS.
            add_special = False
        ids = self._tokenizer.encode(
            text,
            add_special_tokens=add_special,
            split_special_tokens=not parse_special,
        )
        return [int(i) for i in ids]

    def token_to_piece(self, token: int) -> bytes:
        self._ensure_loaded()
        piece = self._pieces.get(token)
        if piece is None:
            text = self._tokenizer.convert_ids_to_tokens(int(token))
            piece = piece_bytes(text, byte_level=self._byte_level, special=token in self._special_ids)
            self._pieces[token] = piece
        return piece

    def is_eog(self, token: int) -> bool:
        return int(token) in self._eog_ids

    # -------------------------------------------------------------------------
    # Sequence memory
    # -------------------------------------------------------------------------

    def decode(self, batch: PromptBatch) -> int:
        self._ensure_loaded()
        import torch

        if batch.n_tokens == 0:
            return 0
        first = batch.positions[0]
        if first > self._n_past:
            logger.warning("Batch starts at position %d but memory ends at %d", first, self._n_past)
            return -1
        if first < self._n_past:
            self._cache.crop(first)
            self._n_past = first

        input_ids = torch.tensor([batch.tokens], dtype=torch.long, device=self._device)
        cache_position = torch.tensor(batch.positions, dtype=torch.long, device=self._device)
        try:
            with torch.no_grad():
                outputs = self._model(
                    input_ids=input_ids,
                    past_key_values=self._cache,
                    cache_position=cache_position,
                    use_cache=True,
                )
        except (RuntimeError, ValueError, IndexError) as exc:
            raise DecodeFailure(f"Forward pass failed at position {first}: {exc}") from exc

        self._cache = outputs.past_key_values
        self._n_past = batch.positions[-1] + 1
        wanted = [i for i, keep in enumerate(batch.logits) if keep]
        if wanted:
            self._logits = outputs.logits[0, wanted[-1]]
        return 0

    def max_position(self, seq_id: int = 0) -> int:
        return self._n_past - 1

    def clear_memory(self, seq_id: int = 0) -> None:
        from transformers import DynamicCache

        self._cache = DynamicCache()
        self._n_past = 0
        self._logits = None

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    def _pop_common(self, kwargs: dict[str, Any]) -> tuple[int | None, int | None]:
        context_size = kwargs.pop("context_size", None)
        n_batch = kwargs.pop("n_batch", None)
        return context_size, n_batch

    def _prepare_runtime(self, kwargs: dict[str, Any]) -> None:
        from ...runtime import resolve_dtype, set_num_threads

        set_num_threads(int(kwargs.pop("n_threads", 4)))
        use_mmap = kwargs.pop("use_mmap", True)
        use_mlock = kwargs.pop("use_mlock", False)
        if not use_mmap or use_mlock:
            logger.info("use_mmap=%s use_mlock=%s have no effect with the transformers backend", use_mmap, use_mlock)
        self._dtype = resolve_dtype(kwargs.pop("dtype", None), self._device)

    def _finish_load(self, config: Any, context_size: int | None, n_batch: int | None) -> None:
        self._model.to(self._device)
        self._model.eval()
        self._n_ctx = self._resolve_context_size(config, context_size)
        self._n_batch = int(n_batch) if n_batch else self._n_ctx
        self._build_token_tables()
        self.clear_memory(0)
        logger.info(
            "Loaded %s on %s (dtype=%s, n_ctx=%d)",
            self._model_path,
            self._device,
            self._dtype,
            self._n_ctx,
        )

    def _resolve_context_size(self, config: Any, requested: int | None) -> int:
        trained = getattr(config, "max_position_embeddings", None)
        if trained is None:
            text_config = getattr(config, "text_config", None)
            trained = getattr(text_config, "max_position_embeddings", None)
        if requested:
            if trained and requested > trained:
                logger.warning("context_size=%d exceeds the trained context length %d", requested, trained)
            return int(requested)
        return int(trained) if trained else DEFAULT_CONTEXT_SIZE

    def _build_token_tables(self) -> None:
        tok = self._tokenizer
        special = set(getattr(tok, "all_special_ids", None) or [])
        special.update(int(i) for i in (getattr(tok, "added_tokens_decoder", None) or {}))
        self._special_ids = frozenset(special)

        eog: set[int] = set()
        if tok.eos_token_id is not None:
            eog.add(int(tok.eos_token_id))
        generation_config = getattr(self._model, "generation_config", None)
        eos = getattr(generation_config, "eos_token_id", None)
        if isinstance(eos, int):
            eog.add(eos)
        elif eos:
            eog.update(int(i) for i in eos)
        vocab = tok.get_vocab()
        eog.update(vocab[name] for name in _END_OF_TURN_TOKENS if name in vocab)
        self._eog_ids = frozenset(eog)

        self._byte_level = _is_byte_level(tok)
        self._pieces.clear()
        logger.debug("EOG ids=%s byte_level=%s", sorted(self._eog_ids), self._byte_level)

    @staticmethod
    def _apply_template(renderer: Any, template: str, messages: list[dict[str, Any]], add_generation_prompt: bool) -> str:
        try:
            return renderer.apply_chat_template(
                messages,
                chat_template=template,
                add_generation_prompt=add_generation_prompt,
                tokenize=False,
            )
        except (jinja2.TemplateError, ValueError, TypeError) as exc:
            raise TemplateRenderError(f"Chat template failed to render: {exc}") from exc


# -----------------------------------------------------------------------------
# Vision backend
# -----------------------------------------------------------------------------


class TransformersVisionAdapter(TransformersAdapter):
    """
    Vision-language backend: text decoding as in `TransformersAdapter`, plus
    Pillow bitmaps and one-pass evaluation of an image + text prompt.
    """

    supports_multimodal = True

    def __init__(self) -> None:
        super().__init__()
        self._processor = None

    @property
    def processor(self):
        return self._processor

    @property
    def default_chat_template(self) -> str | None:
        template = getattr(self._processor, "chat_template", None)
        return template or super().default_chat_template

    @property
    def media_marker(self) -> str:
        token = getattr(self._processor, "image_token", None)
        token = getattr(token, "content", token)
        return token if isinstance(token, str) and token else "<image>"

    def load(self, model_path: str, **kwargs) -> None:
        """Load a vision-language model and its processor.

        Args:
            model_path: Path to the model (local or HF hub).
            mmproj_path: Where to load the processor from (default: model_path).
            n_gpu_layers: 0 keeps the model on CPU unless `device` is given.
            Remaining options as for `TransformersAdapter.load`.
        """
        from transformers import AutoModelForImageTextToText, AutoProcessor

        from ...runtime import resolve_device

        context_size, n_batch = self._pop_common(kwargs)
        processor_path = kwargs.pop("mmproj_path", None) or model_path
        n_gpu_layers = int(kwargs.pop("n_gpu_layers", 0))
        self._device = resolve_device(kwargs.pop("device", None), prefer_gpu=n_gpu_layers > 0)
        trust_remote_code = bool(kwargs.pop("trust_remote_code", False))
        self._model_path = model_path
        self._prepare_runtime(kwargs)

        try:
            self._processor = AutoProcessor.from_pretrained(processor_path, trust_remote_code=trust_remote_code)
            self._tokenizer = self._processor.tokenizer
            self._model = AutoModelForImageTextToText.from_pretrained(
                model_path,
                torch_dtype=self._dtype,
                trust_remote_code=trust_remote_code,
                **kwargs,
            )
        except (OSError, ValueError, ImportError, RuntimeError) as exc:
            self.unload()
            raise ModelLoadError(f"Failed to load vision model from {model_path!r}: {exc}") from exc

        self._finish_load(self._model.config, context_size, n_batch)

    def unload(self) -> None:
        super().unload()
        self._processor = None

    def render_chat(
        self,
        template: str,
        messages: Sequence[dict[str, str]],
        *,
        add_generation_prompt: bool,
    ) -> str:
        self._ensure_loaded()
        # Processor templates expect typed content parts.
        parts = [{"role": m["role"], "content": [{"type": "text", "text": m["content"]}]} for m in messages]
        return self._apply_template(self._processor, template, parts, add_generation_prompt)

    def create_bitmap(self, frame: ImageFrame) -> Any:
        from PIL import Image

        try:
            return Image.frombytes("RGB", (frame.width, frame.height), frame.pixels)
        except ValueError as exc:
            raise MultimodalBuildFailure(f"Could not create bitmap from frame: {exc}") from exc

    def free_bitmap(self, bitmap: Any) -> None:
        bitmap.close()

    def tokenize_multimodal(self, text: str, bitmaps: Sequence[Any]) -> MultimodalChunks:
        self._ensure_loaded()
        try:
            inputs = self._processor(text=text, images=list(bitmaps), return_tensors="pt")
        except (ValueError, TypeError, RuntimeError) as exc:
            raise MultimodalBuildFailure(f"Processor failed to tokenize prompt with images: {exc}") from exc
        return MultimodalChunks(inputs=inputs, n_tokens=int(inputs["input_ids"].shape[-1]), n_images=len(bitmaps))

    def evaluate_chunks(self, chunks: MultimodalChunks, start_pos: int, batch_capacity: int) -> int:
        self._ensure_loaded()
        import torch

        end = start_pos + chunks.n_tokens
        if end > self._n_ctx:
            raise MultimodalBuildFailure(f"Prompt needs {end} positions but the context holds {self._n_ctx}.")
        if start_pos != self._n_past:
            raise MultimodalBuildFailure(f"Chunks start at {start_pos} but memory ends at {self._n_past}.")
        if chunks.n_tokens > batch_capacity:
            logger.debug("Evaluating %d tokens in one pass (batch capacity %d)", chunks.n_tokens, batch_capacity)

        inputs = chunks.inputs.to(self._device, dtype=self._dtype)
        cache_position = torch.arange(start_pos, end, dtype=torch.long, device=self._device)
        try:
            with torch.no_grad():
                outputs = self._model(
                    **inputs,
                    past_key_values=self._cache,
                    cache_position=cache_position,
                    use_cache=True,
                )
        except (RuntimeError, ValueError, IndexError) as exc:
            raise MultimodalBuildFailure(f"Forward pass over image prompt failed: {exc}") from exc

        self._cache = outputs.past_key_values
        self._n_past = end
        self._logits = outputs.logits[0, -1]
        return end
