"""
qchat :: Model capability

The single call shape every backend implements: feed newly presented
token ids, get the score vector for the next position. Backends keep
their own KV state between calls; reset() starts a new session.

INL - 2025
"""

from typing import List, Protocol, runtime_checkable

import torch


@runtime_checkable
class CausalLM(Protocol):
    vocab_size: int
    context_length: int

    def forward(self, token_ids: List[int], start_pos: int) -> torch.Tensor:
        """
        Args:
            token_ids: tokens not yet seen by the model (whole prompt, then one at a time)
            start_pos: absolute position of token_ids[0] in the sequence

        Returns:
            (vocab_size,) float scores for the position after the last token
        """
        ...

    def reset(self) -> None:
        """Drop cached state before a new session."""
        ...
