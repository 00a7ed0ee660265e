"""
qchat :: Full-precision backend

transformers AutoModelForCausalLM over a downloaded safetensors
directory. The KV cache is carried between calls as past_key_values.

INL - 2025
"""

from typing import List, Optional

import torch

from qchat.core.logging import get_logger

logger = get_logger("qchat.models.hf")


class HFCausalLM:
    """CausalLM backed by a HuggingFace transformers model."""

    def __init__(self, model, device: str = "cpu"):
        self.model = model
        self.device = device
        self.vocab_size: int = model.config.vocab_size
        self.context_length: int = getattr(model.config, "max_position_embeddings", 4096)
        self._past = None
        self._seen: int = 0

    def forward(self, token_ids: List[int], start_pos: int) -> torch.Tensor:
        if start_pos != self._seen:
            raise ValueError(f"expected start_pos {self._seen}, got {start_pos}")

        input_ids = torch.tensor([token_ids], dtype=torch.long, device=self.device)
        with torch.no_grad():
            out = self.model(input_ids=input_ids, past_key_values=self._past, use_cache=True)
        self._past = out.past_key_values
        self._seen += len(token_ids)
        return out.logits[0, -1].float().cpu()

    def reset(self):
        self._past = None
        self._seen = 0

    @staticmethod
    def load(model_dir: str, device: str = "cpu", dtype: Optional[torch.dtype] = None) -> "HFCausalLM":
        from transformers import AutoModelForCausalLM

        # CPU doesn't run bf16 well, force float32
        if dtype is None:
            dtype = torch.float32 if device == "cpu" else torch.bfloat16

        logger.info(f"loading safetensors model from {model_dir} (dtype={dtype}, device={device})")
        model = AutoModelForCausalLM.from_pretrained(model_dir, torch_dtype=dtype)
        model.to(device)
        model.eval()
        return HFCausalLM(model, device=device)
