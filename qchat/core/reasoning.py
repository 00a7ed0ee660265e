"""
qchat :: Reasoning Filter

Reasoning models wrap their deliberation in a marker pair:

    <think>
    The user greets me, answer briefly.
    </think>

    Hello!

ReasoningFilter removes those segments from a text stream fed in
arbitrary pieces. Markers may be split across pieces, so a short tail
that could be the start of a marker is held back until the next piece
settles it.

An opening marker that is never closed suppresses everything after it.

Some chat templates write the opening marker into the generation prompt
themselves; the model output then starts inside a segment and only the
closing marker appears. prompt_opens_reasoning() detects that case and
the filter is built with start_inside=True.

INL - 2025
"""

from typing import List, Tuple

from qchat.core.logging import get_logger

logger = get_logger("qchat.reasoning")

THINK_MARKERS: Tuple[str, str] = ("<think>", "</think>")

REASONING_MARKERS = {
    "qwen3": THINK_MARKERS,
    "llama": THINK_MARKERS,  # DeepSeek-R1 distills
}


def prompt_opens_reasoning(prompt: str, open_marker: str) -> bool:
    """True if the generation prompt ends with an opening marker (trailing whitespace ignored)."""
    return bool(open_marker) and prompt.rstrip().endswith(open_marker)


def _partial_suffix(text: str, marker: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of marker."""
    for k in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:k]):
            return k
    return 0


class ReasoningFilter:
    """Incremental text filter that drops open…close marker segments."""

    def __init__(
        self,
        open_marker: str = THINK_MARKERS[0],
        close_marker: str = THINK_MARKERS[1],
        strip_leading_whitespace: bool = True,
        start_inside: bool = False,
    ):
        if not open_marker or not close_marker:
            raise ValueError("reasoning markers must be non-empty")
        self.open_marker = open_marker
        self.close_marker = close_marker
        self.strip_leading_whitespace = strip_leading_whitespace

        self.segments: List[str] = []
        self.unterminated = False
        self._inside = start_inside
        self._buffer = ""
        self._current: List[str] = []
        self._visible: List[str] = []
        self._finished = False

    @property
    def in_reasoning(self) -> bool:
        return self._inside

    @property
    def visible_text(self) -> str:
        return "".join(self._visible)

    def feed(self, text: str) -> str:
        """Consume a piece of model output; return the part safe to show."""
        if self._finished or not text:
            return ""

        self._buffer += text
        out: List[str] = []

        while self._buffer:
            if self._inside:
                end = self._buffer.find(self.close_marker)
                if end == -1:
                    keep = _partial_suffix(self._buffer, self.close_marker)
                    self._current.append(self._buffer[: len(self._buffer) - keep])
                    self._buffer = self._buffer[len(self._buffer) - keep:]
                    break
                self._current.append(self._buffer[:end])
                self.segments.append("".join(self._current))
                self._current = []
                self._buffer = self._buffer[end + len(self.close_marker):]
                self._inside = False
                continue

            start = self._buffer.find(self.open_marker)
            if start == -1:
                keep = _partial_suffix(self._buffer, self.open_marker)
                out.append(self._buffer[: len(self._buffer) - keep])
                self._buffer = self._buffer[len(self._buffer) - keep:]
                break
            out.append(self._buffer[:start])
            self._buffer = self._buffer[start + len(self.open_marker):]
            self._inside = True

        return self._emit("".join(out))

    def finish(self) -> str:
        """End of stream: release a held-back tail, or swallow an unterminated segment."""
        if self._finished:
            return ""
        self._finished = True

        if self._inside:
            self._current.append(self._buffer)
            self.segments.append("".join(self._current))
            self._current = []
            self._buffer = ""
            self.unterminated = True
            logger.warning("Reasoning segment was never closed; suppressed until end of stream")
            return ""

        tail, self._buffer = self._buffer, ""
        return self._emit(tail)

    def _emit(self, text: str) -> str:
        if self.strip_leading_whitespace and not self._visible:
            text = text.lstrip()
        if text:
            self._visible.append(text)
        return text
