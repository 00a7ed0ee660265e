"""
qchat :: Errors

Error taxonomy for the chat core.

  ResolutionError      model identifier could not be turned into artifacts
  InvalidDistribution  sampler received unusable scores
  InferenceError       the model backend failed mid-generation
  ContextOverflow      prompt cannot fit the context window

INL - 2025
"""

from typing import Optional


class QChatError(Exception):
    """Base class for every error raised by qchat."""


class ConfigError(QChatError, ValueError):
    """The configuration table is malformed."""


# =========================================================================
# Resolution
# =========================================================================

class ResolutionError(QChatError, LookupError):
    """A model identifier did not resolve to an ArtifactSpec."""

    def __init__(self, identifier: str, message: str):
        super().__init__(f"{message} (model id: {identifier!r})")
        self.identifier = identifier


class InvalidIdentifier(ResolutionError):
    pass


class UnknownArchitecture(ResolutionError):
    pass


class UnknownVariant(ResolutionError):
    pass


class NoDefaultVariant(ResolutionError):
    pass


class NoTokenizerSource(ResolutionError):
    pass


# =========================================================================
# Generation
# =========================================================================

class InvalidDistribution(QChatError, ValueError):
    """Logits have the wrong shape or contain no finite score."""


class InferenceError(QChatError, RuntimeError):
    """The model backend failed while computing the next distribution."""


class ContextOverflow(QChatError):
    """The rendered prompt does not fit the model's context window."""

    def __init__(self, prompt_tokens: int, context_length: int, message: Optional[str] = None):
        super().__init__(
            message
            or f"prompt needs {prompt_tokens} tokens but the context window is {context_length}"
        )
        self.prompt_tokens = prompt_tokens
        self.context_length = context_length
