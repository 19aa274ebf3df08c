"""
Token budget and conversation history.

The budget counts the tokens of the conversation window the oracle sees.
History entries carry their own token estimate, so evicting an entry hands
its tokens back to the budget. ConversationContext ties the two together
with a "make room, then account" protocol:

    needed = estimate(system) + estimate(user) + reserve
    context.make_room(needed)          # evict oldest until can_add(needed)
    reply = await oracle.decide(...)   # one call
    context.record(user, reply_text)   # account actual usage, append entries
"""

import logging
import math
import re
from collections import deque
from dataclasses import dataclass
from typing import List, Tuple

logger = logging.getLogger(__name__)


class BudgetExceeded(Exception):
    """An add() would push the budget past its maximum. Nothing was changed."""


class BudgetExhausted(Exception):
    """History is empty and the budget still cannot fit the next prompt."""


def estimate_tokens(text: str) -> int:
    """Coarse budgeting estimate: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def approx_tokens(text: str) -> int:
    """Like estimate_tokens, but collapses runs of whitespace first."""
    if not text:
        return 0
    return estimate_tokens(" ".join(text.split()))


_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?\n]?")


def chunk_text_by_tokens(text: str, max_tokens: int) -> List[str]:
    """Split text into chunks of roughly max_tokens, on sentence boundaries.

    Sentences longer than the limit are split on words.
    """
    if not text:
        return []
    if approx_tokens(text) <= max_tokens:
        return [text]

    chunks: List[str] = []
    current: List[str] = []
    current_tokens = 0

    def flush():
        nonlocal current, current_tokens
        joined = " ".join(current).strip()
        if joined:
            chunks.append(joined)
        current = []
        current_tokens = 0

    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(0).strip()
        if not sentence:
            continue
        sentence_tokens = approx_tokens(sentence)

        if sentence_tokens > max_tokens:
            flush()
            words: List[str] = []
            word_tokens = 0
            for word in sentence.split():
                wt = approx_tokens(word + " ")
                if words and word_tokens + wt > max_tokens:
                    chunks.append(" ".join(words))
                    words, word_tokens = [], 0
                words.append(word)
                word_tokens += wt
            if words:
                chunks.append(" ".join(words))
            continue

        if current_tokens + sentence_tokens > max_tokens:
            flush()
        current.append(sentence)
        current_tokens += sentence_tokens

    flush()
    return chunks


# ── Token budget ──────────────────────────────────────────────────────────

class TokenBudget:
    """Prompt/completion token counters bounded by a maximum."""

    def __init__(self, max_tokens: int):
        if max_tokens < 0:
            raise ValueError("max_tokens must be non-negative")
        self.max_tokens = max_tokens
        self.prompt_tokens = 0
        self.completion_tokens = 0

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def can_add(self, n: int) -> bool:
        return self.total + n <= self.max_tokens

    def remaining(self) -> int:
        return max(0, self.max_tokens - self.total)

    def add(self, prompt_tokens: int, completion_tokens: int) -> None:
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("token counts must be non-negative")
        new_total = self.total + prompt_tokens + completion_tokens
        if new_total > self.max_tokens:
            raise BudgetExceeded(f"token limit exceeded: {new_total}/{self.max_tokens}")
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens

    def release(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.prompt_tokens = max(0, self.prompt_tokens - prompt_tokens)
        self.completion_tokens = max(0, self.completion_tokens - completion_tokens)

    def reset(self) -> None:
        self.prompt_tokens = 0
        self.completion_tokens = 0

    def __repr__(self) -> str:
        return f"TokenBudget(total={self.total}, max={self.max_tokens})"


# ── Conversation history ──────────────────────────────────────────────────

@dataclass(frozen=True)
class ConversationEntry:
    role: str  # system | user | assistant
    text: str
    tokens: int

    @property
    def token_split(self) -> Tuple[int, int]:
        """(prompt, completion) attribution of this entry's tokens."""
        if self.role == "assistant":
            return 0, self.tokens
        return self.tokens, 0


class ConversationHistory:
    """Sliding window over the most recent role-tagged messages."""

    ROLES = ("system", "user", "assistant")

    def __init__(self, max_entries: int):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: deque = deque()

    def append(self, role: str, text: str) -> List[ConversationEntry]:
        """Add an entry; return whatever the count bound pushed out the front."""
        if role not in self.ROLES:
            raise ValueError(f"unknown role: {role}")
        self._entries.append(ConversationEntry(role=role, text=text, tokens=estimate_tokens(text)))
        evicted = []
        while len(self._entries) > self.max_entries:
            evicted.append(self._entries.popleft())
        return evicted

    def evict_oldest(self):
        if not self._entries:
            return None
        return self._entries.popleft()

    def entries(self) -> Tuple[ConversationEntry, ...]:
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ConversationContext:
    """History plus budget, kept consistent with each other."""

    def __init__(self, max_tokens: int, max_entries: int):
        self.budget = TokenBudget(max_tokens)
        self.history = ConversationHistory(max_entries)

    def _release(self, entries) -> None:
        for entry in entries:
            self.budget.release(*entry.token_split)

    def make_room(self, needed: int) -> int:
        """Evict oldest entries until `needed` tokens fit. Returns eviction count."""
        evicted = 0
        while not self.budget.can_add(needed):
            entry = self.history.evict_oldest()
            if entry is None:
                raise BudgetExhausted(
                    f"token budget cannot fit {needed} tokens "
                    f"(max {self.budget.max_tokens}) even with empty history"
                )
            self._release([entry])
            evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} history entries to free {needed} tokens ({self.budget!r})")
        return evicted

    def record(self, user_text: str, assistant_text: str) -> None:
        """Account one exchange and append it to history."""
        prompt_tokens = estimate_tokens(user_text)
        completion_tokens = estimate_tokens(assistant_text)
        while True:
            try:
                self.budget.add(prompt_tokens, completion_tokens)
                break
            except BudgetExceeded as e:
                entry = self.history.evict_oldest()
                if entry is None:
                    raise BudgetExhausted(str(e)) from e
                logger.debug(f"{e}; pruning oldest history entry")
                self._release([entry])

        self._release(self.history.append("user", user_text))
        self._release(self.history.append("assistant", assistant_text))

    def messages(self) -> List[dict]:
        return [{"role": e.role, "content": e.text} for e in self.history.entries()]

    def reset(self) -> None:
        self.history.clear()
        self.budget.reset()
