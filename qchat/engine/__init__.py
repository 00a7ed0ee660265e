"""
qchat :: Engine

Generation loop and chat sessions.
"""

from qchat.engine.generation import (
    GenerationResult, GenerationState, GenerationStream, StopReason, TextGeneration,
)
from qchat.engine.chat import ChatSession, ChatStream
