"""
qchat :: Tokenizer

Wraps HuggingFace tokenizers for text ↔ token id conversion.

Besides encode/decode, exposes token_bytes(id): the raw UTF-8 bytes a
single token contributes to the output. The incremental decoder works on
these bytes so a multi-byte character split across tokens is never
emitted half-finished.

INL - 2025
"""

import json
import os
from functools import lru_cache
from typing import Dict, List, Optional, Sequence

from qchat.core.logging import get_logger

logger = get_logger("qchat.tokenizer")


@lru_cache(maxsize=1)
def _byte_level_table() -> Dict[str, int]:
    """Inverse of the GPT-2 bytes → printable unicode mapping."""
    bs = list(range(ord("!"), ord("~") + 1))
    bs += list(range(ord("¡"), ord("¬") + 1))
    bs += list(range(ord("®"), ord("ÿ") + 1))
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return {chr(c): b for b, c in zip(bs, cs)}


def _uses_byte_level(spec: dict) -> bool:
    def walk(node) -> bool:
        if not isinstance(node, dict):
            return False
        if node.get("type") == "ByteLevel":
            return True
        return any(walk(child) for child in node.get("decoders", []) or node.get("pretokenizers", []))

    return walk(spec.get("decoder")) or walk(spec.get("pre_tokenizer"))


class Tokenizer:
    """
    Tokenizer wrapper.

    Input:  text (str)
    Output: token IDs (List[int])

    Uses tokenizers library (HuggingFace fast tokenizer).
    """

    def __init__(self, tokenizer_path: str, eos_token_ids: Optional[Sequence[int]] = None):
        from tokenizers import Tokenizer as HFTokenizer

        self.tokenizer = HFTokenizer.from_file(tokenizer_path)
        self._init_vocab_tables(json.loads(self.tokenizer.to_str()))
        self._eos_token_ids = list(eos_token_ids or [])
        self._bytes_cache: Dict[int, bytes] = {}

    def _init_vocab_tables(self, spec: dict):
        self.byte_level = _uses_byte_level(spec)
        self.special_ids = set()
        self.added_ids = set()
        for tok in spec.get("added_tokens", []):
            self.added_ids.add(tok["id"])
            if tok.get("special"):
                self.special_ids.add(tok["id"])

    def encode(self, text: str) -> List[int]:
        """Text → token IDs. Special-token markup in the text is kept as special tokens."""
        return self.tokenizer.encode(text, add_special_tokens=False).ids

    def decode(self, token_ids: List[int], skip_special_tokens: bool = True) -> str:
        """Token IDs → text."""
        return self.tokenizer.decode(token_ids, skip_special_tokens=skip_special_tokens)

    def token_bytes(self, token_id: int) -> bytes:
        """Raw bytes one token contributes to decoded output (b'' for special tokens)."""
        cached = self._bytes_cache.get(token_id)
        if cached is not None:
            return cached

        if token_id in self.special_ids:
            raw = b""
        else:
            piece = self.tokenizer.id_to_token(token_id)
            if piece is None:
                raw = b""
            elif token_id in self.added_ids:
                raw = piece.encode("utf-8")
            elif self.byte_level:
                table = _byte_level_table()
                raw = bytes(table[ch] for ch in piece if ch in table)
            elif len(piece) == 6 and piece.startswith("<0x") and piece.endswith(">"):
                raw = bytes([int(piece[3:5], 16)])
            else:
                raw = piece.replace("▁", " ").encode("utf-8")

        self._bytes_cache[token_id] = raw
        return raw

    def token_to_id(self, token: str) -> Optional[int]:
        return self.tokenizer.token_to_id(token)

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()

    @property
    def eos_token_ids(self) -> List[int]:
        return list(self._eos_token_ids)

    @staticmethod
    def from_directory(directory: str) -> "Tokenizer":
        """Load tokenizer.json and discover EOS ids from the metadata files beside it."""
        tokenizer_path = os.path.join(directory, "tokenizer.json")
        if not os.path.exists(tokenizer_path):
            raise FileNotFoundError(f"tokenizer.json not found in {directory}")

        tok = Tokenizer(tokenizer_path)
        tok._eos_token_ids = _discover_eos_ids(directory, tok)
        logger.info(f"tokenizer: {tokenizer_path} (vocab={tok.vocab_size}, eos={tok.eos_token_ids})")
        return tok


def _read_json(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _discover_eos_ids(directory: str, tok: Tokenizer) -> List[int]:
    """
    EOS ids, in priority order:
      1. generation_config.json  eos_token_id (int or list)
      2. config.json             eos_token_id
      3. tokenizer_config.json   eos_token (string or {"content": ...})
    """
    ids: List[int] = []

    for name in ("generation_config.json", "config.json"):
        value = _read_json(os.path.join(directory, name)).get("eos_token_id")
        if value is None:
            continue
        for v in value if isinstance(value, list) else [value]:
            if int(v) not in ids:
                ids.append(int(v))
        break

    eos_token = _read_json(os.path.join(directory, "tokenizer_config.json")).get("eos_token")
    if isinstance(eos_token, dict):
        eos_token = eos_token.get("content")
    if eos_token:
        eos_id = tok.token_to_id(eos_token)
        if eos_id is not None and eos_id not in ids:
            ids.append(eos_id)

    if not ids:
        logger.warning(f"No EOS token id found in {directory}; generation stops only at max_tokens")
    return ids
