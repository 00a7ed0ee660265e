"""
qchat :: Chat Session

Multi-turn chat on top of the generation loop.

  chat(message)
    → append user turn
    → render history with the chat template (evict old exchanges if the
      prompt does not fit the context window minus the answer reserve)
    → stream generation through the reasoning filter
    → append the assistant turn

History policy: reasoning segments are dropped from the assistant turn
stored in history unless keep_reasoning=True. They stay available as
last_reasoning for inspection.

A failed or abandoned call leaves history exactly as it was before.

INL - 2025
"""

import asyncio
import dataclasses
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

from qchat.core.chat_template import ChatTemplate, load_chat_template
from qchat.core.conversation import ConversationState, Role
from qchat.core.errors import ContextOverflow
from qchat.core.hub import fetch_artifacts
from qchat.core.logging import get_logger
from qchat.core.metrics import ChatMetrics
from qchat.core.reasoning import (
    REASONING_MARKERS, THINK_MARKERS, ReasoningFilter, prompt_opens_reasoning,
)
from qchat.core.registry import ConfigTable, load_config_table, resolve
from qchat.core.sampling import InferenceConfig
from qchat.core.tokenizer import Tokenizer
from qchat.engine.generation import GenerationStream, StopReason, TextGeneration
from qchat.models.loader import load_model

logger = get_logger("qchat.chat")


class ChatStream:
    """
    Visible text of one chat call.

    async for piece in session.chat("hi"): ...
    """

    def __init__(self, session: "ChatSession", message: str):
        self._session = session
        self._generation: Optional[GenerationStream] = None
        self._cancelled = False
        self._agen = session._run(message, self)

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> str:
        return await self._agen.__anext__()

    async def aclose(self):
        await self._agen.aclose()

    def cancel(self):
        """Stop generating at the next step; the partial answer is kept in history."""
        self._cancelled = True
        if self._generation is not None:
            self._generation.cancel()

    @property
    def stop_reason(self) -> Optional[StopReason]:
        return self._generation.stop_reason if self._generation else None


class ChatSession:
    """Conversation history + prompt rendering + filtered streaming."""

    def __init__(
        self,
        generation: TextGeneration,
        template: ChatTemplate,
        *,
        system_prompt: Optional[str] = None,
        reasoning_markers: Tuple[str, str] = THINK_MARKERS,
        keep_reasoning: bool = False,
        context_length: Optional[int] = None,
        reserve_tokens: Optional[int] = None,
        template_kwargs: Optional[Dict] = None,
    ):
        self.generation = generation
        self.template = template
        self.reasoning_markers = reasoning_markers
        self.keep_reasoning = keep_reasoning
        self.context_length = context_length or generation.context_length
        # Room left for the answer when fitting the prompt
        if reserve_tokens is None:
            reserve_tokens = min(generation.config.max_tokens, self.context_length // 4)
        self.reserve_tokens = reserve_tokens
        self.template_kwargs = dict(template_kwargs or {})

        self.history = ConversationState()
        if system_prompt:
            self.history.append(Role.SYSTEM, system_prompt)

        self.last_reasoning: List[str] = []
        self._lock = asyncio.Lock()

    def chat(self, message: str) -> ChatStream:
        """Start one exchange. Nothing runs until the stream is iterated."""
        return ChatStream(self, message)

    async def ask(self, message: str) -> str:
        """Run one exchange to completion and return the visible answer."""
        return "".join([piece async for piece in self.chat(message)])

    def reset(self):
        """Forget the conversation, keeping the system prompt."""
        self.history.clear(keep_system=True)
        self.last_reasoning = []

    def render_prompt(self) -> str:
        """
        Render history into a prompt that fits the context window.

        The prompt must leave reserve_tokens of the window for the answer.
        Oldest user/assistant exchanges are evicted first. Raises
        ContextOverflow when nothing more can be evicted.
        """
        budget = self.context_length - self.reserve_tokens
        evicted = 0
        while True:
            prompt = self.template.apply(
                self.history.as_messages(), add_generation_prompt=True, **self.template_kwargs,
            )
            n_tokens = len(self.generation.tokenizer.encode(prompt))
            if n_tokens <= budget:
                if evicted:
                    logger.info(f"evicted {evicted} exchange(s) to fit {n_tokens}/{budget} prompt tokens")
                return prompt
            if not self.history.evict_oldest_exchange():
                raise ContextOverflow(
                    n_tokens, self.context_length,
                    f"prompt needs {n_tokens} tokens but only {budget} of the {self.context_length}-token "
                    f"window are left after reserving {self.reserve_tokens} for the answer",
                )
            evicted += 1

    async def _run(self, message: str, stream: ChatStream) -> AsyncIterator[str]:
        async with self._lock:
            snapshot = list(self.history.turns)
            self.history.append(Role.USER, message)
            completed = False
            try:
                prompt = self.render_prompt()

                generation = self.generation.stream(prompt)
                stream._generation = generation
                if stream._cancelled:
                    generation.cancel()

                open_marker, close_marker = self.reasoning_markers
                opened = prompt_opens_reasoning(prompt, open_marker)
                reasoning = ReasoningFilter(open_marker, close_marker, start_inside=opened)
                raw: List[str] = []

                async with aclosing(generation):
                    async for piece in generation:
                        raw.append(piece)
                        visible = reasoning.feed(piece)
                        if visible:
                            yield visible
                tail = reasoning.finish()
                if tail:
                    yield tail

                self.last_reasoning = list(reasoning.segments)
                for segment in reasoning.segments:
                    logger.debug(f"reasoning ({len(segment)} chars): {segment!r}")

                if self.keep_reasoning:
                    # Opening marker written by the template
                    answer = (open_marker if opened else "") + "".join(raw)
                else:
                    answer = reasoning.visible_text
                self.history.append(Role.ASSISTANT, answer)
                completed = True
            finally:
                if not completed:
                    # Error or abandoned stream: undo the user turn and any eviction
                    self.history.turns = snapshot

    # =====================================================================
    # Construction from a model identifier
    # =====================================================================

    @staticmethod
    def from_model_id(
        model_id: str,
        config: Optional[InferenceConfig] = None,
        table: Union[ConfigTable, str, Path, None] = None,
        device: str = "cpu",
        system_prompt: Optional[str] = None,
        keep_reasoning: bool = False,
        metrics: Optional[ChatMetrics] = None,
    ) -> "ChatSession":
        """
        Resolve → fetch → load tokenizer and model → build the session.

        Resolution errors surface here, before anything is downloaded.
        """
        if not isinstance(table, ConfigTable):
            table = load_config_table(table or "models.toml")
        spec = resolve(model_id, table)
        logger.info(f"resolved {model_id} → {spec.model_id} ({spec.format.value})")

        artifacts = fetch_artifacts(spec)
        tokenizer = Tokenizer.from_directory(artifacts.tokenizer_dir)
        model = load_model(spec, artifacts, device=device)

        config = config or InferenceConfig()
        if not config.eos_token_ids and tokenizer.eos_token_ids:
            config = dataclasses.replace(config, eos_token_ids=tuple(tokenizer.eos_token_ids))

        generation = TextGeneration(model, tokenizer, config, metrics=metrics)
        template = load_chat_template(artifacts.tokenizer_dir, spec.architecture.value)
        return ChatSession(
            generation,
            template,
            system_prompt=system_prompt,
            reasoning_markers=REASONING_MARKERS.get(spec.architecture.value, THINK_MARKERS),
            keep_reasoning=keep_reasoning,
        )
