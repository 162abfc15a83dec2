"""Per-turn generation counters."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class GenerationMetrics:
    """Tokens produced and wall time spent producing them in the current turn."""

    tokens_generated: int = 0
    decode_time_us: int = 0

    def reset(self) -> None:
        self.tokens_generated = 0
        self.decode_time_us = 0

    def record(self, elapsed_us: int, n_tokens: int = 1) -> None:
        self.tokens_generated += int(n_tokens)
        self.decode_time_us += max(int(elapsed_us), 0)

    @property
    def tokens_per_second(self) -> float:
        # No decode time yet (fresh turn or sub-microsecond step): report 0.
        if self.decode_time_us <= 0:
            return 0.0
        return self.tokens_generated / (self.decode_time_us / 1e6)
