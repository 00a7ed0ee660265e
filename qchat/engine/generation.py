"""
qchat :: Generation Loop

Drives one generation session:

    INIT      reset model cache, sampler window, decoder; tokenize prompt
    PREFILL   one forward over the whole prompt
    DECODING  sample → decode → yield → stop checks → forward one token
    STOPPED   flush the decoder once, end the stream

Stop conditions, checked every step, highest priority first:
    1. sampled token is an EOS id          → eos
    2. output reached max_tokens           → length
    3. context window full                 → length
    4. caller cancelled (top of each step) → cancelled

A prompt that fills the whole window raises ContextOverflow before
prefill.

The loop is an async generator. Model calls are synchronous; the loop
yields control to the event loop before each one and at every text
increment. One session per loaded model at a time (asyncio.Lock).

INL - 2025
"""

import asyncio
import enum
import itertools
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

import torch

from qchat.core.errors import ContextOverflow, InferenceError, QChatError
from qchat.core.logging import SessionLogger, get_logger
from qchat.core.metrics import ChatMetrics
from qchat.core.sampling import InferenceConfig, SamplerState, sample_token
from qchat.core.token_stream import IncrementalDecoder
from qchat.core.tokenizer import Tokenizer
from qchat.models.base import CausalLM

logger = get_logger("qchat.engine")

_session_ids = itertools.count(1)


class GenerationState(str, enum.Enum):
    INIT = "init"
    PREFILL = "prefill"
    DECODING = "decoding"
    STOPPED = "stopped"


class StopReason(str, enum.Enum):
    EOS = "eos"
    MAX_LENGTH = "length"
    CANCELLED = "cancelled"


@dataclass
class GenerationResult:
    """Result of a drained generation session."""
    text: str
    prompt_tokens: List[int]
    output_tokens: List[int]
    stop_reason: StopReason
    elapsed_ms: float


@dataclass
class _SessionRecord:
    session_id: int
    state: GenerationState = GenerationState.INIT
    stop_reason: Optional[StopReason] = None
    prompt_tokens: List[int] = field(default_factory=list)
    output_tokens: List[int] = field(default_factory=list)
    elapsed_ms: float = 0.0
    cancelled: bool = False


class GenerationStream:
    """
    Lazy, finite stream of text increments for one session.

    async for piece in stream: ...
    stream.cancel()  → stops at the next step boundary

    Iterating after the end yields nothing.
    """

    def __init__(self, generation: "TextGeneration", prompt: str):
        self._record = _SessionRecord(session_id=next(_session_ids))
        self._agen = generation._run(prompt, self._record)

    def __aiter__(self) -> "GenerationStream":
        return self

    async def __anext__(self) -> str:
        return await self._agen.__anext__()

    async def aclose(self):
        await self._agen.aclose()

    def cancel(self):
        self._record.cancelled = True

    @property
    def session_id(self) -> int:
        return self._record.session_id

    @property
    def state(self) -> GenerationState:
        return self._record.state

    @property
    def stop_reason(self) -> Optional[StopReason]:
        return self._record.stop_reason

    @property
    def prompt_tokens(self) -> List[int]:
        return list(self._record.prompt_tokens)

    @property
    def output_tokens(self) -> List[int]:
        return list(self._record.output_tokens)

    @property
    def elapsed_ms(self) -> float:
        return self._record.elapsed_ms


class TextGeneration:
    """
    Generation loop over one loaded model + tokenizer.

    The config is fixed for the lifetime of the object; build a new
    TextGeneration (sharing model and tokenizer) to change it.
    """

    def __init__(
        self,
        model: CausalLM,
        tokenizer: Tokenizer,
        config: Optional[InferenceConfig] = None,
        metrics: Optional[ChatMetrics] = None,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.config = config or InferenceConfig()
        self.metrics = metrics

        self.sampler_state = SamplerState.for_config(self.config, vocab_size=model.vocab_size)
        self.decoder = IncrementalDecoder(tokenizer)
        self._lock = asyncio.Lock()

    @property
    def eos_token_ids(self) -> List[int]:
        return list(self.config.eos_token_ids or self.tokenizer.eos_token_ids)

    @property
    def context_length(self) -> int:
        return self.model.context_length

    def stream(self, prompt: str) -> GenerationStream:
        """Start a session. Nothing runs until the stream is iterated."""
        return GenerationStream(self, prompt)

    async def generate(self, prompt: str) -> GenerationResult:
        """Run a session to completion and collect the text."""
        stream = self.stream(prompt)
        pieces = [piece async for piece in stream]
        return GenerationResult(
            text="".join(pieces),
            prompt_tokens=stream.prompt_tokens,
            output_tokens=stream.output_tokens,
            stop_reason=stream.stop_reason,
            elapsed_ms=stream.elapsed_ms,
        )

    async def _forward(self, token_ids: List[int], start_pos: int) -> torch.Tensor:
        await asyncio.sleep(0)
        try:
            return self.model.forward(token_ids, start_pos)
        except QChatError:
            raise
        except Exception as e:
            raise InferenceError(f"model forward failed at position {start_pos}: {e}") from e

    async def _run(self, prompt: str, record: _SessionRecord) -> AsyncIterator[str]:
        async with self._lock:
            log = SessionLogger(record.session_id, logger)
            metrics_start = self.metrics.on_session_start() if self.metrics else None
            finished = False

            try:
                # === INIT ===
                record.state = GenerationState.INIT
                self.model.reset()
                self.sampler_state.reset()
                self.decoder.reset()
                eos_ids = set(self.eos_token_ids)

                prompt_ids = self.tokenizer.encode(prompt)
                if not prompt_ids:
                    raise ValueError("prompt encodes to zero tokens")
                if len(prompt_ids) >= self.context_length:
                    raise ContextOverflow(len(prompt_ids), self.context_length)
                record.prompt_tokens = prompt_ids
                log.started(len(prompt_ids))

                # === PREFILL ===
                record.state = GenerationState.PREFILL
                logits = await self._forward(prompt_ids, 0)

                # === DECODING ===
                record.state = GenerationState.DECODING
                output = record.output_tokens
                while True:
                    if record.cancelled:
                        record.stop_reason = StopReason.CANCELLED
                        break

                    token_id = sample_token(logits, self.config, self.sampler_state)
                    output.append(token_id)

                    text = self.decoder.push(token_id)
                    if text:
                        yield text

                    if token_id in eos_ids:
                        record.stop_reason = StopReason.EOS
                        break
                    if len(output) >= self.config.max_tokens:
                        record.stop_reason = StopReason.MAX_LENGTH
                        break
                    if len(prompt_ids) + len(output) >= self.context_length:
                        record.stop_reason = StopReason.MAX_LENGTH
                        break

                    logits = await self._forward([token_id], len(prompt_ids) + len(output) - 1)

                # === STOPPED ===
                record.state = GenerationState.STOPPED
                finished = True

                tail = self.decoder.flush()
                if tail:
                    yield tail

                record.elapsed_ms = log.finished(record.stop_reason.value, len(prompt_ids), len(output))
            except BaseException as e:
                record.state = GenerationState.STOPPED
                record.elapsed_ms = log.elapsed_ms()
                if not finished:
                    if not isinstance(e, Exception):
                        record.stop_reason = StopReason.CANCELLED
                    log.aborted(e, len(record.output_tokens))
                raise
            finally:
                if self.metrics and metrics_start is not None:
                    reason = record.stop_reason.value if record.stop_reason else "error"
                    self.metrics.on_session_end(
                        metrics_start, len(record.prompt_tokens), len(record.output_tokens), reason,
                    )
