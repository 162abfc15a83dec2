"""Token sampling for the Transformers backends.

The chain mirrors the usual local-inference order:
top-k -> min-p -> temperature -> draw from the distribution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import torch


def sample_token(
    logits: torch.Tensor,
    *,
    top_k: int = 40,
    min_p: float = 0.0,
    temperature: float = 0.8,
    generator: Any = None,
) -> int:
    """Sample one token id from a vocabulary-sized logits vector.

    `temperature == 0` is greedy. NaN logits are never sampled; if nothing
    finite is left the argmax of the sanitized logits is returned.
    """
    import torch

    if temperature is None or temperature < 0:
        raise ValueError(f"Temperature must be >= 0, got {temperature}")
    if not 0.0 <= float(min_p) <= 1.0:
        raise ValueError(f"min_p must be in [0, 1], got {min_p}")

    # Sample on CPU in fp32: candidate sets are small and this keeps the
    # generator device-independent.
    values = logits.detach().reshape(-1).float().cpu()
    values = torch.nan_to_num(values, nan=float("-inf"), neginf=float("-inf"))
    candidates = torch.arange(values.numel())

    if 0 < top_k < values.numel():
        values, candidates = torch.topk(values, int(top_k))

    if min_p > 0.0:
        probs = torch.softmax(values, dim=-1)
        keep = probs >= float(min_p) * probs.max()
        if keep.any():
            values, candidates = values[keep], candidates[keep]

    if temperature == 0:
        return int(candidates[torch.argmax(values)].item())

    probs = torch.softmax(values / float(temperature), dim=-1)
    if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
        probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
        probs = torch.clamp(probs, min=0.0)
        z = probs.sum()
        if z <= 0:
            return int(candidates[torch.argmax(values)].item())
        probs = probs / z

    idx = torch.multinomial(probs, 1, generator=generator)
    return int(candidates[idx].item())


@dataclass
class SamplerChain:
    """Configured sampler with its own random generator."""

    min_p: float
    temperature: float
    top_k: int = 40
    seed: int | None = None
    _generator: Any = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        import torch

        self._generator = torch.Generator()
        if self.seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(int(self.seed))

    def __call__(self, logits: torch.Tensor) -> int:
        return sample_token(
            logits,
            top_k=self.top_k,
            min_p=self.min_p,
            temperature=self.temperature,
            generator=self._generator,
        )
