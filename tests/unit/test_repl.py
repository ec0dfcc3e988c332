from __future__ import annotations
import io

import pytest
from rich.console import Console

from conftest import FakeBackend, wire
from llmrepl.core.state import RenderMode
from llmrepl.render import Renderer
from llmrepl.repl import Repl


def _repl(*backends, **kw):
    svc = wire(*backends, **kw)
    out = io.StringIO()
    renderer = Renderer(Console(file=out, width=80, force_terminal=False, color_system=None))
    return Repl(svc, renderer), svc, out


@pytest.fixture
def repl():
    r, svc, out = _repl(FakeBackend(), FakeBackend("other", parts=["bye"]))
    yield r, svc, out
    r.close()


def test_exit_words_and_blank_lines(repl):
    r, _, _ = repl
    assert r.handle("   ") is True
    for word in ("exit", "QUIT", "/exit", "/quit"):
        assert r.handle(word) is False


def test_query_streams_and_appends_markdown(repl):
    r, svc, out = repl
    assert r.handle("hello there") is True
    text = out.getvalue()
    # raw deltas, then the formatted copy below the rule
    assert text.count("Hello, world") == 2
    assert svc.history()[-1].output == "Hello, world"


def test_commands_and_shell(repl):
    r, svc, out = repl
    r.handle("/provider other m9")
    assert svc.snapshot().backend == "other"
    r.handle("!ls -la")
    assert "ran ls -la" in out.getvalue()
    assert [h.kind.value for h in svc.history()] == ["command", "shell"]


def test_errors_are_printed_and_loop_continues(repl):
    r, svc, out = repl
    assert r.handle("/frobnicate") is True
    assert "Error:" in out.getvalue()
    assert svc.history()[-1].status == "failed"


def test_failed_stream_keeps_partial_output():
    r, svc, out = _repl(FakeBackend(parts=["par", "tial", "never"], fail_after=2))
    try:
        r.handle("go")
        text = out.getvalue()
        assert "partial" in text
        assert "stream failed" in text
        assert svc.history()[-1].status == "failed"
        assert svc.history()[-1].output == "partial"
    finally:
        r.close()


def test_non_stream_mode_uses_query():
    r, svc, out = _repl(FakeBackend())
    svc.stream = False
    svc.state.set_render_mode(RenderMode.OFF)
    try:
        r.handle("hi")
        assert "Hello, world" in out.getvalue()
        assert svc.history()[-1].kind.value == "query"
        assert svc.registry.get("fake").calls[-1]["op"] == "query"
    finally:
        r.close()


def test_unexpected_exception_is_printed_and_loop_continues(monkeypatch):
    r, svc, out = _repl(FakeBackend())

    async def broken(line: str) -> str:
        raise RuntimeError("renderer exploded")

    monkeypatch.setattr(svc, "command", broken)
    try:
        assert r.handle("/status") is True
        assert "Unexpected error: renderer exploded" in out.getvalue()
        assert r.handle("hello") is True
        assert svc.history()[-1].output == "Hello, world"
    finally:
        r.close()
