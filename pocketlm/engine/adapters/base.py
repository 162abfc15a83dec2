"""Base adapter interface for inference backends."""

from abc import ABC, abstractmethod
from typing import Any, Sequence

from ..chat_types import ImageFrame
from ..types import MultimodalChunks, PromptBatch


class BaseAdapter(ABC):
    """
    Abstract base class for inference backends.

    An adapter owns the model weights, the tokenizer, the single-sequence KV
    memory and the sampler. Sessions drive it one call at a time and never
    look at model-specific details.

    Multimodal backends set `supports_multimodal = True` and implement the
    bitmap / chunk methods at the bottom of this class.
    """

    supports_multimodal: bool = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def load(self, model_path: str, **kwargs) -> None:
        """
        Load model and tokenizer and create the inference context.

        Args:
            model_path: Local path or HF Hub model identifier.
            **kwargs: Backend-specific options (context_size, n_threads,
                device, dtype, ...).

        Raises:
            ModelLoadError: The model or context could not be created.
        """
        pass

    def unload(self) -> None:
        """
        Free the context and the model, in that order.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        """Context window size in tokens."""
        pass

    @property
    @abstractmethod
    def n_batch(self) -> int:
        """Maximum number of tokens evaluated in one decode call."""
        pass

    @property
    def default_chat_template(self) -> str | None:
        """Chat template shipped with the model, if any."""
        return None

    @property
    @abstractmethod
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the loaded model.

        Returns:
            Dict with keys like 'model_path', 'device', 'n_ctx', etc.
        """
        pass

    # -------------------------------------------------------------------------
    # Sampler
    # -------------------------------------------------------------------------

    @abstractmethod
    def configure_sampler(
        self,
        *,
        min_p: float,
        temperature: float,
        top_k: int = 40,
        seed: int | None = None,
    ) -> None:
        """Install the `top_k -> min_p -> temperature -> dist` chain."""
        pass

    def free_sampler(self) -> None:
        pass

    @abstractmethod
    def sample(self) -> int:
        """Sample a token from the logits of the last decoded position."""
        pass

    # -------------------------------------------------------------------------
    # Text
    # -------------------------------------------------------------------------

    @abstractmethod
    def render_chat(
        self,
        template: str,
        messages: Sequence[dict[str, str]],
        *,
        add_generation_prompt: bool,
    ) -> str:
        """
        Render `messages` through a Jinja chat template.

        Raises:
            TemplateRenderError: The template failed to render.
        """
        pass

    @abstractmethod
    def tokenize(self, text: str, *, add_special: bool, parse_special: bool) -> list[int]:
        pass

    @abstractmethod
    def token_to_piece(self, token: int) -> bytes:
        """Raw bytes of a token; may end in the middle of a UTF-8 sequence."""
        pass

    @abstractmethod
    def is_eog(self, token: int) -> bool:
        """True for end-of-generation tokens."""
        pass

    # -------------------------------------------------------------------------
    # Sequence memory
    # -------------------------------------------------------------------------

    @abstractmethod
    def decode(self, batch: PromptBatch) -> int:
        """
        Evaluate `batch` into sequence memory.

        Returns:
            0 on success, a positive value for a recoverable warning, a
            negative value on failure.

        Raises:
            DecodeFailure: The backend raised while evaluating.
        """
        pass

    @abstractmethod
    def max_position(self, seq_id: int = 0) -> int:
        """Highest occupied position of `seq_id`, or -1 when empty."""
        pass

    @abstractmethod
    def clear_memory(self, seq_id: int = 0) -> None:
        pass

    # -------------------------------------------------------------------------
    # Multimodal
    # -------------------------------------------------------------------------

    @property
    def media_marker(self) -> str:
        """Placeholder the prompt uses for one image."""
        raise NotImplementedError(f"{type(self).__name__} does not support images.")

    def create_bitmap(self, frame: ImageFrame) -> Any:
        raise NotImplementedError(f"{type(self).__name__} does not support images.")

    def free_bitmap(self, bitmap: Any) -> None:
        pass

    def tokenize_multimodal(self, text: str, bitmaps: Sequence[Any]) -> MultimodalChunks:
        raise NotImplementedError(f"{type(self).__name__} does not support images.")

    def evaluate_chunks(self, chunks: MultimodalChunks, start_pos: int, batch_capacity: int) -> int:
        """
        Evaluate tokenized text + images starting at `start_pos`.

        Returns:
            The position after the last evaluated token.

        Raises:
            MultimodalBuildFailure: The chunks could not be evaluated.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support images.")
