"""
Unit Tests for Token Budget and Conversation History

Tests:
- Token estimation helpers and sentence chunking
- TokenBudget add/release/can_add bookkeeping
- ConversationHistory count bound
- ConversationContext make-room / record protocol
"""

import pytest

from src.agents.web_agent.context import (
    BudgetExceeded,
    BudgetExhausted,
    ConversationContext,
    ConversationHistory,
    TokenBudget,
    approx_tokens,
    chunk_text_by_tokens,
    estimate_tokens,
)


class TestEstimation:
    """Tests for the 4-characters-per-token heuristics."""

    def test_empty_text_is_zero(self):
        assert estimate_tokens("") == 0
        assert approx_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_approx_collapses_whitespace(self):
        assert approx_tokens("a    b\n\n\tc") == estimate_tokens("a b c")

    def test_short_text_is_one_chunk(self):
        assert chunk_text_by_tokens("Hello there.", 100) == ["Hello there."]

    def test_chunks_respect_sentence_boundaries(self):
        text = "First sentence here. Second sentence here. Third sentence here."
        chunks = chunk_text_by_tokens(text, 6)
        assert len(chunks) >= 2
        assert chunks[0].startswith("First sentence here.")
        assert all(approx_tokens(c) <= 6 for c in chunks)

    def test_overlong_sentence_is_split_on_words(self):
        text = " ".join(["word"] * 40)
        chunks = chunk_text_by_tokens(text, 5)
        assert len(chunks) > 1
        assert " ".join(chunks).split() == text.split()


class TestTokenBudget:
    """Tests for TokenBudget."""

    def test_add_and_total(self):
        budget = TokenBudget(100)
        budget.add(30, 20)
        assert budget.total == 50
        assert budget.remaining() == 50

    def test_add_at_exact_limit_succeeds(self):
        budget = TokenBudget(100)
        budget.add(60, 40)
        assert budget.total == 100
        assert budget.remaining() == 0

    def test_add_past_limit_raises_without_mutation(self):
        budget = TokenBudget(100)
        budget.add(90, 0)
        with pytest.raises(BudgetExceeded):
            budget.add(10, 1)
        assert budget.prompt_tokens == 90
        assert budget.completion_tokens == 0

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError):
            TokenBudget(10).add(-1, 0)

    def test_can_add_is_inclusive(self):
        budget = TokenBudget(10)
        budget.add(4, 0)
        assert budget.can_add(6) is True
        assert budget.can_add(7) is False

    def test_release_clamps_at_zero(self):
        budget = TokenBudget(10)
        budget.add(3, 2)
        budget.release(5, 5)
        assert budget.total == 0

    def test_reset(self):
        budget = TokenBudget(10)
        budget.add(3, 2)
        budget.reset()
        assert budget.total == 0
        assert budget.can_add(10)


class TestConversationHistory:
    """Tests for the count-bounded history window."""

    def test_count_bound_evicts_oldest(self):
        history = ConversationHistory(max_entries=3)
        for i in range(3):
            assert history.append("user", f"m{i}") == []
        evicted = history.append("assistant", "m3")
        assert [e.text for e in evicted] == ["m0"]
        assert [e.text for e in history.entries()] == ["m1", "m2", "m3"]
        assert len(history) == 3

    def test_entries_carry_token_estimates(self):
        history = ConversationHistory(max_entries=5)
        history.append("assistant", "x" * 9)
        (entry,) = history.entries()
        assert entry.tokens == 3
        assert entry.token_split == (0, 3)

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError):
            ConversationHistory(5).append("tool", "nope")

    def test_evict_oldest_on_empty(self):
        assert ConversationHistory(2).evict_oldest() is None

    def test_entries_is_a_snapshot(self):
        history = ConversationHistory(2)
        history.append("user", "a")
        snapshot = history.entries()
        history.append("user", "b")
        assert len(snapshot) == 1


class TestConversationContext:
    """Tests for the make-room-then-record protocol."""

    def test_record_accounts_and_appends(self):
        ctx = ConversationContext(max_tokens=100, max_entries=10)
        ctx.record("u" * 8, "a" * 4)
        assert ctx.budget.prompt_tokens == 2
        assert ctx.budget.completion_tokens == 1
        assert ctx.messages() == [
            {"role": "user", "content": "u" * 8},
            {"role": "assistant", "content": "a" * 4},
        ]

    def test_make_room_evicts_and_releases(self):
        ctx = ConversationContext(max_tokens=20, max_entries=10)
        ctx.record("u" * 40, "a" * 20)  # 10 + 5 tokens
        assert ctx.budget.total == 15

        evicted = ctx.make_room(10)
        assert evicted == 1
        assert ctx.budget.total == 5
        assert ctx.budget.can_add(10)

    def test_make_room_with_empty_history_raises(self):
        ctx = ConversationContext(max_tokens=10, max_entries=10)
        with pytest.raises(BudgetExhausted):
            ctx.make_room(11)

    def test_make_room_terminates_once_history_is_drained(self):
        ctx = ConversationContext(max_tokens=40, max_entries=10)
        for _ in range(4):
            ctx.record("u" * 20, "a" * 16)  # 5 + 4 tokens per exchange
        assert ctx.budget.total == 36

        ctx.make_room(40)
        assert len(ctx.history) == 0
        assert ctx.budget.total == 0

    def test_count_eviction_also_releases_tokens(self):
        ctx = ConversationContext(max_tokens=1000, max_entries=2)
        ctx.record("u" * 40, "a" * 40)
        ctx.record("v" * 40, "b" * 40)
        assert len(ctx.history) == 2
        assert ctx.budget.total == 20
        assert [m["content"][0] for m in ctx.messages()] == ["v", "b"]

    def test_record_prunes_when_reply_overflows(self):
        ctx = ConversationContext(max_tokens=20, max_entries=10)
        ctx.record("u" * 36, "b" * 4)  # 9 + 1 tokens
        ctx.record("v" * 4, "a" * 40)  # 1 + 10 tokens, only fits once the user turn is gone
        assert ctx.budget.total == 12
        assert [m["content"][0] for m in ctx.messages()] == ["b", "v", "a"]

    def test_record_larger_than_budget_raises(self):
        ctx = ConversationContext(max_tokens=5, max_entries=10)
        with pytest.raises(BudgetExhausted):
            ctx.record("u" * 40, "a")

    def test_reset(self):
        ctx = ConversationContext(max_tokens=100, max_entries=10)
        ctx.record("hello", "world")
        ctx.reset()
        assert ctx.budget.total == 0
        assert ctx.messages() == []
