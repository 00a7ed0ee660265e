"""
qchat :: Quantized backend

llama.cpp (llama-cpp-python) evaluation of a GGUF file. Only the
forward pass is used: tokenization, sampling and detokenization stay in
qchat, so the tokenizer of the base repository drives the token ids.

INL - 2025
"""

from typing import List

import numpy as np
import torch

from qchat.core.logging import get_logger

logger = get_logger("qchat.models.gguf")


class GGUFCausalLM:
    """CausalLM backed by llama_cpp.Llama."""

    def __init__(self, llm):
        self.llm = llm
        self.vocab_size: int = llm.n_vocab()
        self.context_length: int = llm.n_ctx()

    def forward(self, token_ids: List[int], start_pos: int) -> torch.Tensor:
        if start_pos != self.llm.n_tokens:
            raise ValueError(f"expected start_pos {self.llm.n_tokens}, got {start_pos}")
        self.llm.eval(token_ids)
        scores = np.asarray(self.llm.scores[self.llm.n_tokens - 1], dtype=np.float32)
        return torch.from_numpy(scores.copy())

    def reset(self):
        self.llm.reset()

    @staticmethod
    def load(model_path: str, device: str = "cpu", n_ctx: int = 8192) -> "GGUFCausalLM":
        from llama_cpp import Llama

        logger.info(f"loading gguf model from {model_path} (n_ctx={n_ctx}, device={device})")
        llm = Llama(
            model_path=model_path,
            n_ctx=n_ctx,
            n_gpu_layers=0 if device == "cpu" else -1,
            logits_all=False,
            verbose=False,
        )
        return GGUFCausalLM(llm)
