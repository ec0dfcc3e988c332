# tests/unit/test_context_management.py

from __future__ import annotations

from conftest import WordCounter
from llmrepl.core.context import (
    ContextPolicy,
    ContextWindowManager,
    TokenCounter,
    _rough_token_count,
    render_transcript,
)


def _build_long_conversation():
    """
    system, user (topic), then LLM_1/LLM_2 replies r0..r9 of five words each.
    """
    turns = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "topic"}]
    for i in range(10):
        turns.append({"role": "LLM_1" if i % 2 == 0 else "LLM_2", "content": f"r{i} w w w w"})
    return turns


def test_context_trims_head_keeps_pinned_and_tail():
    turns = _build_long_conversation()
    # every turn costs 4 + words; system(6) + topic(5) + 4 replies (9 each) = 47
    mgr = ContextWindowManager(
        ContextPolicy(max_input_tokens=50, response_reserve_tokens=0, always_keep_last_n=4),
        counter=WordCounter(),
    )
    out = mgr.apply(turns)

    assert out[:2] == turns[:2]
    assert [t["content"].split()[0] for t in out[2:]] == ["r6", "r7", "r8", "r9"]
    assert mgr.counter.count_turns(out) <= 50


def test_context_under_budget_is_unchanged():
    turns = _build_long_conversation()
    mgr = ContextWindowManager(ContextPolicy(), counter=WordCounter())
    assert mgr.apply(turns) == turns
    assert mgr.apply([]) == []


def test_context_always_keeps_latest_reply():
    turns = [
        {"role": "system", "content": "s"},
        {"role": "user", "content": "t"},
        {"role": "LLM_1", "content": "x " * 200},
        {"role": "LLM_2", "content": "y " * 200},
    ]
    mgr = ContextWindowManager(
        ContextPolicy(max_input_tokens=20, response_reserve_tokens=0, always_keep_last_n=4),
        counter=WordCounter(),
    )
    out = mgr.apply(turns)
    # over budget even so, but the newest reply is never shed
    assert out == [turns[0], turns[1], turns[3]]


def test_reserve_reduces_target():
    turns = _build_long_conversation()
    loose = ContextWindowManager(ContextPolicy(max_input_tokens=200, response_reserve_tokens=0), counter=WordCounter())
    tight = ContextWindowManager(ContextPolicy(max_input_tokens=200, response_reserve_tokens=170), counter=WordCounter())
    assert len(tight.apply(turns)) < len(loose.apply(turns))


def test_render_transcript_and_heuristic():
    text = render_transcript([{"role": "user", "content": "hi"}, {"role": "LLM_1", "content": "hello"}])
    assert text == "user: hi\n\nLLM_1: hello"
    assert _rough_token_count("") == 0
    assert _rough_token_count("abcd" * 10) == 10


def test_token_counter_falls_back_when_encoding_unavailable(monkeypatch):
    import llmrepl.core.context as ctx

    def boom(name):
        raise OSError("offline")

    monkeypatch.setattr(ctx.tiktoken, "get_encoding", boom)
    counter = TokenCounter()
    assert counter.count_text("abcdefgh") == 2
    assert counter.count_turns([{"role": "user", "content": "abcd"}]) == 5
