"""
qchat :: Model Loader

Pick the backend for a resolved ArtifactSpec. The set of backends is
closed: one entry per (architecture, weight format).

INL - 2025
"""

from typing import Callable, Dict, Tuple

from qchat.core.hub import LocalArtifacts
from qchat.core.logging import get_logger
from qchat.core.registry import ArtifactSpec, ModelArch, WeightFormat
from qchat.models.base import CausalLM
from qchat.models.gguf_model import GGUFCausalLM
from qchat.models.hf_model import HFCausalLM

logger = get_logger("qchat.loader")

Loader = Callable[[str, str], CausalLM]

MODEL_BACKENDS: Dict[Tuple[ModelArch, WeightFormat], Loader] = {
    (ModelArch.QWEN3, WeightFormat.FULL): HFCausalLM.load,
    (ModelArch.QWEN3, WeightFormat.QUANTIZED): GGUFCausalLM.load,
    (ModelArch.LLAMA, WeightFormat.FULL): HFCausalLM.load,
    (ModelArch.LLAMA, WeightFormat.QUANTIZED): GGUFCausalLM.load,
}


def load_model(spec: ArtifactSpec, artifacts: LocalArtifacts, device: str = "cpu") -> CausalLM:
    """Instantiate the inference backend for spec from local artifacts."""
    key = (spec.architecture, spec.format)
    if key not in MODEL_BACKENDS:
        raise ValueError(
            f"No backend for {spec.architecture.value} ({spec.format.value}). "
            f"Available: {', '.join(f'{a.value}/{f.value}' for a, f in MODEL_BACKENDS)}"
        )
    logger.info(f"model: {spec.model_id} → {spec.model_repo}/{spec.model_file}")
    return MODEL_BACKENDS[key](artifacts.model_path, device)
