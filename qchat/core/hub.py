"""
qchat :: Hub

Fetch the files an ArtifactSpec points at through huggingface_hub.
Caching, resume and retries are huggingface_hub's job.

    full precision  → snapshot of *.json + *.safetensors
    quantized       → the single .gguf file
    tokenizer       → tokenizer.json + metadata from tokenizer_repo

INL - 2025
"""

from dataclasses import dataclass
from typing import Optional

from qchat.core.logging import get_logger
from qchat.core.registry import ArtifactSpec

logger = get_logger("qchat.hub")

TOKENIZER_FILES = [
    "tokenizer.json",
    "tokenizer_config.json",
    "generation_config.json",
    "config.json",
    "chat_template.jinja",
]


@dataclass(frozen=True)
class LocalArtifacts:
    """Local paths of a fetched model."""
    model_path: str       # directory (safetensors) or file (gguf)
    tokenizer_dir: str


def fetch_artifacts(spec: ArtifactSpec, token: Optional[str] = None) -> LocalArtifacts:
    """Download (or reuse cached) weights and tokenizer files for a resolved spec."""
    from huggingface_hub import hf_hub_download, snapshot_download

    if spec.is_quantized:
        logger.info(f"fetching {spec.model_repo}/{spec.model_file}")
        model_path = hf_hub_download(repo_id=spec.model_repo, filename=spec.model_file, token=token)
    else:
        logger.info(f"fetching {spec.model_repo} (safetensors)")
        model_path = snapshot_download(
            repo_id=spec.model_repo,
            allow_patterns=["*.json", "*.safetensors"],
            token=token,
        )

    logger.info(f"fetching tokenizer from {spec.tokenizer_repo}")
    tokenizer_dir = snapshot_download(
        repo_id=spec.tokenizer_repo,
        allow_patterns=TOKENIZER_FILES,
        token=token,
    )

    return LocalArtifacts(model_path=model_path, tokenizer_dir=tokenizer_dir)
