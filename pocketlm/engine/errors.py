"""Error taxonomy for sessions and the engine boundary.

Engine-contract violations (load, template render, context window, decode)
propagate to the caller. Data-validation problems (frame shape) and
multimodal build failures are raised internally and turned into boolean
outcomes at the public seam, so the caller can correct input without losing
session state.
"""

from __future__ import annotations


class PocketLMError(Exception):
    """Base class for all pocketlm errors."""


class ModelLoadError(PocketLMError, RuntimeError):
    """The model, the multimodal projector or the context failed to materialize."""


class TemplateRenderError(PocketLMError, RuntimeError):
    """The chat template could not be rendered for the current history."""


class ContextWindowExceeded(PocketLMError, RuntimeError):
    """The pending batch does not fit in the remaining context window.

    Raised before the engine is asked to decode, so engine memory is left
    untouched. The turn cannot continue; start a new session or clear history.
    """

    def __init__(self, context_used: int, pending_tokens: int, context_size: int) -> None:
        super().__init__(
            f"context size reached: {context_used} used + {pending_tokens} pending "
            f"> {context_size} available"
        )
        self.context_used = context_used
        self.pending_tokens = pending_tokens
        self.context_size = context_size


class DecodeFailure(PocketLMError, RuntimeError):
    """The engine rejected a batch; its internal state is no longer trustworthy."""


class InvalidFrameDimensions(PocketLMError, ValueError):
    """Pixel buffer does not match width x height x channels, or channels != 3."""


class MultimodalBuildFailure(PocketLMError, RuntimeError):
    """Multimodal tokenize or evaluate failed; the caller may retry."""
