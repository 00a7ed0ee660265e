"""
Inference backends for qchat.
One call shape (CausalLM.forward), one backend per weight format.
"""

from qchat.models.base import CausalLM
from qchat.models.loader import load_model, MODEL_BACKENDS
