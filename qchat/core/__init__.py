"""
qchat :: Core

Model-independent building blocks.
  - registry: model identifier → ArtifactSpec
  - tokenizer: text ↔ token ids, token bytes
  - token_stream: incremental token → text decoding
  - sampling: next-token selection
  - chat_template / conversation / reasoning: chat prompt handling
"""

from qchat.core.registry import (
    ArtifactSpec, ConfigTable, ModelArch, ModelRegistry, WeightFormat,
    load_config_table, resolve,
)
from qchat.core.sampling import InferenceConfig, SamplerState, sample_token
from qchat.core.token_stream import IncrementalDecoder
from qchat.core.reasoning import ReasoningFilter
from qchat.core.conversation import ConversationState, Role, Turn
