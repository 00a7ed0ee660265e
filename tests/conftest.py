"""
qchat :: Test fixtures

In-process stand-ins for the two external capabilities:
  - ByteTokenizer: one token per UTF-8 byte, plus an EOS id
  - ScriptedModel: returns scores that make a scripted token the argmax

INL - 2025
"""

import os
import sys
from typing import Dict, List, Optional, Sequence

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

EOS = 256
VOCAB = 260


class ByteTokenizer:
    """ids 0..255 are raw bytes, 256 is EOS (decodes to nothing)."""

    def __init__(self, extra: Optional[Dict[int, bytes]] = None):
        self.extra = dict(extra or {})
        self.eos_token_ids = [EOS]
        self.vocab_size = VOCAB

    def encode(self, text: str) -> List[int]:
        return list(text.encode("utf-8"))

    def token_bytes(self, token_id: int) -> bytes:
        if token_id < 256:
            return bytes([token_id])
        return self.extra.get(token_id, b"")

    def decode(self, token_ids: Sequence[int]) -> str:
        return b"".join(self.token_bytes(t) for t in token_ids).decode("utf-8", errors="replace")


class ScriptedModel:
    """
    Forward call k returns logits peaking at script[k]; EOS once the
    script runs out. Each reset() starts the next script in `scripts`.
    """

    def __init__(
        self,
        scripts: Sequence[Sequence[int]] = ((),),
        vocab_size: int = VOCAB,
        context_length: int = 4096,
        fail_at: Optional[int] = None,
    ):
        self.scripts = [list(s) for s in scripts]
        self.vocab_size = vocab_size
        self.context_length = context_length
        self.fail_at = fail_at
        self.calls: List[tuple] = []
        self.resets = 0
        self._session = -1
        self._step = 0

    def reset(self):
        self.resets += 1
        self._session += 1
        self._step = 0

    def forward(self, token_ids: List[int], start_pos: int) -> torch.Tensor:
        self.calls.append((list(token_ids), start_pos))
        if self.fail_at is not None and self._step == self.fail_at:
            raise RuntimeError("out of memory")
        script = self.scripts[min(self._session, len(self.scripts) - 1)]
        target = script[self._step] if self._step < len(script) else EOS
        self._step += 1
        logits = torch.full((self.vocab_size,), -10.0)
        logits[target] = 10.0
        return logits


def text_ids(text: str) -> List[int]:
    return list(text.encode("utf-8"))


@pytest.fixture
def tokenizer():
    return ByteTokenizer()
