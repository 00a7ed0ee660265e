"""
qchat :: Sampling

Picks the next token id from the model's score vector.

Order of operations:
  1. repeat penalty over the recent-history window
  2. greedy argmax when temperature == 0
  3. temperature → softmax → top-k → top-p → draw from the seeded generator
  4. push the chosen id into the window

Reproducible: same logits, same config, same seed → same tokens.

INL - 2025
"""

import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, Optional, Tuple

import torch

from qchat.core.errors import InvalidDistribution


@dataclass(frozen=True)
class InferenceConfig:
    """Generation knobs. Frozen: build a new one with dataclasses.replace()."""
    temperature: float = 0.8
    max_tokens: int = 1000
    repeat_penalty: float = 1.1
    repeat_last_n: int = 64
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    eos_token_ids: Tuple[int, ...] = ()
    seed: int = 299792458

    def __post_init__(self):
        if self.temperature < 0 or math.isnan(self.temperature):
            raise ValueError("temperature must be >= 0")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if self.repeat_penalty < 1.0:
            raise ValueError("repeat_penalty must be >= 1.0")
        if self.repeat_last_n < 0:
            raise ValueError("repeat_last_n must be >= 0")
        if self.top_k is not None and self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if self.top_p is not None and not (0.0 < self.top_p <= 1.0):
            raise ValueError("top_p must be in (0, 1]")
        # Accept any iterable of ids, store a tuple
        object.__setattr__(self, "eos_token_ids", tuple(int(t) for t in self.eos_token_ids))

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0.0


class SamplerState:
    """
    Per-session sampler state: the recent-token window and the random stream.

    Owned by one generation session and reset at its start.
    """

    def __init__(self, window: int, seed: int, vocab_size: Optional[int] = None):
        self.window = window
        self.seed = seed
        self.vocab_size = vocab_size
        self.recent: Deque[int] = deque(maxlen=window)
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(seed)

    @staticmethod
    def for_config(config: InferenceConfig, vocab_size: Optional[int] = None) -> "SamplerState":
        return SamplerState(config.repeat_last_n, config.seed, vocab_size=vocab_size)

    def push(self, token_id: int):
        if self.window > 0:
            self.recent.append(token_id)

    def reset(self):
        self.recent.clear()
        self.generator.manual_seed(self.seed)


def _validate(logits: torch.Tensor, vocab_size: Optional[int]) -> torch.Tensor:
    if not isinstance(logits, torch.Tensor):
        logits = torch.as_tensor(logits)
    if logits.dim() != 1:
        raise InvalidDistribution(f"expected 1-D logits, got shape {tuple(logits.shape)}")
    if logits.numel() == 0:
        raise InvalidDistribution("logits are empty")
    if vocab_size is not None and logits.shape[0] != vocab_size:
        raise InvalidDistribution(f"expected {vocab_size} logits, got {logits.shape[0]}")

    logits = logits.detach().to(device="cpu", dtype=torch.float32).clone()
    finite = torch.isfinite(logits)
    if not finite.any():
        raise InvalidDistribution("logits contain no finite score")
    # Non-finite scores are never selectable
    logits[~finite] = float("-inf")
    return logits


def apply_repeat_penalty(
    logits: torch.Tensor,
    penalty: float,
    recent_ids: Iterable[int],
) -> torch.Tensor:
    """
    Discourage recently emitted tokens.

    Positive scores are divided by the penalty, non-positive scores
    multiplied, so a penalized token never gains score.
    """
    ids = sorted({t for t in recent_ids if 0 <= t < logits.shape[0]})
    if penalty == 1.0 or not ids:
        return logits
    index = torch.tensor(ids, dtype=torch.long)
    scores = logits[index]
    logits[index] = torch.where(scores > 0, scores / penalty, scores * penalty)
    return logits


def sample_token(
    logits: torch.Tensor,
    config: InferenceConfig,
    state: SamplerState,
) -> int:
    """
    Sample a single token from logits.

    Args:
        logits: (vocab_size,) float tensor for the next position
        config: sampling configuration of the session
        state: the session's recent-token window and random stream

    Returns:
        token_id: int
    """
    logits = _validate(logits, state.vocab_size)
    logits = apply_repeat_penalty(logits, config.repeat_penalty, state.recent)

    if config.is_greedy:
        # argmax returns the first maximal index → ties go to the lowest id
        token_id = int(logits.argmax().item())
        state.push(token_id)
        return token_id

    logits = logits / config.temperature
    probs = torch.softmax(logits, dim=-1)

    # Top-k filtering
    if config.top_k is not None and config.top_k < probs.shape[0]:
        kth = probs.topk(config.top_k).values[-1]
        probs[probs < kth] = 0.0

    # Top-p (nucleus) filtering: keep the smallest prefix reaching top_p
    if config.top_p is not None and config.top_p < 1.0:
        sorted_probs, sorted_indices = probs.sort(descending=True)
        cumulative = (sorted_probs / sorted_probs.sum()).cumsum(dim=-1)
        drop = (cumulative - sorted_probs / sorted_probs.sum()) >= config.top_p
        drop[0] = False
        sorted_probs[drop] = 0.0
        probs = torch.zeros_like(probs).scatter(0, sorted_indices, sorted_probs)

    total = probs.sum()
    if not torch.isfinite(total) or total <= 0:
        raise InvalidDistribution("no probability mass left after filtering")
    probs = probs / total

    token_id = int(torch.multinomial(probs, num_samples=1, generator=state.generator).item())
    state.push(token_id)
    return token_id
