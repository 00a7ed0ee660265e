"""
qchat :: Incremental Token Decoder

Turns a stream of token ids into a stream of text increments.

Tokens carry bytes, not characters: one CJK character or emoji is often
split across two or three tokens. The decoder buffers the bytes of an
unfinished UTF-8 sequence and only emits text once it is complete, so
callers never see a half symbol or a spurious U+FFFD.

    push(id)  → newly completed text (possibly "")
    flush()   → whatever is still buffered, with replacement characters

Concatenating every push() result and the final flush() gives exactly
b"".join(token bytes).decode("utf-8", errors="replace").

INL - 2025
"""

import codecs
from typing import List, Protocol


class TokenBytes(Protocol):
    def token_bytes(self, token_id: int) -> bytes: ...


class IncrementalDecoder:
    """Token id → text increment, holding back incomplete UTF-8 sequences."""

    def __init__(self, tokenizer: TokenBytes):
        self.tokenizer = tokenizer
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pieces: List[str] = []
        self.token_count: int = 0

    def push(self, token_id: int) -> str:
        """Feed one token; return the text it completes."""
        self.token_count += 1
        text = self._utf8.decode(self.tokenizer.token_bytes(token_id), final=False)
        if text:
            self._pieces.append(text)
        return text

    def flush(self) -> str:
        """Force out buffered bytes. Used once, when the stream terminates."""
        text = self._utf8.decode(b"", final=True)
        if text:
            self._pieces.append(text)
        return text

    @property
    def pending_bytes(self) -> bytes:
        """Bytes of an unfinished symbol waiting for the next token."""
        return self._utf8.getstate()[0]

    @property
    def text(self) -> str:
        """Everything emitted this session."""
        return "".join(self._pieces)

    def reset(self):
        """Start a new session."""
        self._utf8.reset()
        self._pieces = []
        self.token_count = 0
