# Inference backends
#
# Each adapter implements a common interface for:
#   - Loading model + tokenizer and creating the context
#   - Tokenizing, decoding batches and sampling one token at a time
#   - Evaluating images together with a prompt (vision backends)
#
# Sessions use adapters to stay backend-agnostic.

from .base import BaseAdapter

__all__ = ["BaseAdapter"]
