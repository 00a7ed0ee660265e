"""
qchat: local multi-turn chat over quantized or full-precision models.

  Resolve:   "qwen3.4b_q4" → weights + tokenizer repos (models.toml)
  Generate:  prefill → sample → decode, streamed as text increments
  Chat:      templated history, context eviction, reasoning filter

INL - 2025
"""

__version__ = "0.1.0"
