# src/llmrepl/core/context.py
from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Dict, List

import tiktoken

logger = logging.getLogger(__name__)

# {"role": "system" | "user" | "LLM_1" | "LLM_2", "content": str}
Turn = Dict[str, str]


def _rough_token_count(text: str) -> int:
    # heuristic: ~4 chars per token
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


class TokenCounter:
    """
    Approximate token counts for conversation transcripts.
    Backends tokenize differently; cl100k_base is a stable middle ground for budgeting.
    The encoding is loaded on first use; if tiktoken cannot load it (offline, no cache)
    counts fall back to a character heuristic.
    """

    def __init__(self, encoding: str = "cl100k_base"):
        self.encoding = encoding
        self._enc = None
        self._loaded = False

    def _encoder(self):
        if not self._loaded:
            self._loaded = True
            try:
                self._enc = tiktoken.get_encoding(self.encoding)
            except Exception as e:
                logger.warning("tiktoken encoding %s unavailable, using heuristic counts: %s", self.encoding, e)
                self._enc = None
        return self._enc

    def count_text(self, text: str) -> int:
        enc = self._encoder()
        if enc is None:
            return _rough_token_count(text)
        return len(enc.encode(text or "", disallowed_special=()))

    def count_turns(self, turns: List[Turn]) -> int:
        # per-turn overhead for the "role: " prefix and separators
        return sum(4 + self.count_text(str(t.get("content", ""))) for t in turns)


@dataclass(frozen=True)
class ContextPolicy:
    """
    max_input_tokens: hard cap for the prompt sent on each turn.
    response_reserve_tokens: budget left for the model to answer.
    always_keep_last_n: most-recent turns kept regardless of size (besides the leading system/topic turns).
    """
    max_input_tokens: int = 6000
    response_reserve_tokens: int = 1024
    always_keep_last_n: int = 4


class ContextWindowManager:
    """
    Trims old turns until the transcript fits within (max_input_tokens - response_reserve_tokens).
    The leading system and user (topic) turns are pinned; the oldest replies go first.
    """

    def __init__(self, policy: ContextPolicy, counter: TokenCounter | None = None):
        self.policy = policy
        self.counter = counter or TokenCounter()

    def _target(self) -> int:
        return max(1, self.policy.max_input_tokens - max(0, self.policy.response_reserve_tokens))

    def apply(self, turns: List[Turn]) -> List[Turn]:
        if not turns:
            return turns

        pinned: List[Turn] = []
        rest = list(turns)
        while rest and rest[0].get("role") in ("system", "user") and len(pinned) < 2:
            pinned.append(rest.pop(0))

        target = self._target()
        keep_tail_n = min(self.policy.always_keep_last_n, len(rest))
        head = rest[:-keep_tail_n] if keep_tail_n > 0 else rest
        tail = rest[-keep_tail_n:] if keep_tail_n > 0 else []

        candidate = pinned + head + tail
        if self.counter.count_turns(candidate) <= target:
            return candidate

        drop_idx = 0
        while drop_idx < len(head) and self.counter.count_turns(pinned + head[drop_idx:] + tail) > target:
            drop_idx += 1
        trimmed = pinned + head[drop_idx:] + tail

        # still over: shed the oldest kept replies, but always leave the latest one
        while self.counter.count_turns(trimmed) > target and len(trimmed) > len(pinned) + 1:
            trimmed = pinned + trimmed[len(pinned) + 1:]

        return trimmed


def render_transcript(turns: List[Turn]) -> str:
    """The prompt form of a transcript: "role: content" blocks separated by blank lines."""
    return "\n\n".join(f"{t['role']}: {t['content']}" for t in turns)
