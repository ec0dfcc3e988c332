from __future__ import annotations
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from llmrepl.commands.builtins import build_router  # noqa: E402
from llmrepl.core.context import ContextPolicy, ContextWindowManager  # noqa: E402
from llmrepl.core.errors import BackendTransientError, NotReady, StreamError  # noqa: E402
from llmrepl.core.pipeline import StreamingPipeline  # noqa: E402
from llmrepl.core.ports import BackendIdentity, Fragment  # noqa: E402
from llmrepl.core.service import ReplService  # noqa: E402
from llmrepl.core.state import SessionState  # noqa: E402
from llmrepl.providers.registry import BackendRegistry  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path_factory, monkeypatch):
    """Temporary HOME and log dir; no real credentials leak into tests."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    monkeypatch.setenv("LLM_REPL_LOG_DIR", str(base / "logs"))
    for var in ("GROQ_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY", "OPENAI_API_KEY", "LLM_REPL_SERVER_ADDR"):
        monkeypatch.delenv(var, raising=False)


class WordCounter:
    """Whitespace token counts; keeps tests independent of tiktoken downloads."""

    def count_text(self, text: str) -> int:
        return len((text or "").split())

    def count_turns(self, turns) -> int:
        return sum(4 + self.count_text(t.get("content", "")) for t in turns)


class FakeStream:
    def __init__(self, parts: List[str], *, fail_after: Optional[int] = None, delay: float = 0.0, backend: str = "fake"):
        self.parts = list(parts)
        self.fail_after = fail_after
        self.delay = delay
        self.backend = backend
        self.sent = 0
        self.closed = False
        self._done = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Fragment:
        if self._done:
            raise StopAsyncIteration
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_after is not None and self.sent >= self.fail_after:
            self._done = True
            return Fragment.failure(StreamError(self.backend, "connection reset"))
        if self.sent >= len(self.parts):
            self._done = True
            return Fragment.end()
        piece = self.parts[self.sent]
        self.sent += 1
        return Fragment.delta(piece)

    async def aclose(self) -> None:
        self.closed = True
        self._done = True


class FakeBackend:
    """Scriptable in-memory backend."""

    def __init__(
        self,
        name: str = "fake",
        *,
        parts: Optional[List[str]] = None,
        models: Optional[List[str]] = None,
        ready: bool = True,
        streaming: bool = True,
        fail_after: Optional[int] = None,
        delay: float = 0.0,
        unreachable: bool = False,
    ):
        self.identity = BackendIdentity(name=name, supports_streaming=streaming, requires_credential=not ready)
        self.parts = parts if parts is not None else ["Hello", ", ", "world"]
        self.models = models if models is not None else ["m1", "m2"]
        self.ready = ready
        self.streaming = streaming
        self.fail_after = fail_after
        self.delay = delay
        self.unreachable = unreachable
        self.calls: List[Dict[str, Any]] = []
        self.streams: List[FakeStream] = []
        self.closed = False

    def identify(self) -> str:
        return self.identity.name

    async def check_readiness(self) -> None:
        if not self.ready:
            raise NotReady(self.identify(), f"set {self.identify().upper()}_API_KEY")

    async def enumerate_models(self) -> List[str]:
        if self.unreachable:
            raise BackendTransientError(self.identify(), "request failed: connection refused")
        return list(self.models)

    async def query(self, model: str, prompt: str, options=None) -> str:
        self.calls.append({"op": "query", "model": model, "prompt": prompt, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unreachable:
            raise BackendTransientError(self.identify(), "request failed: connection refused")
        return "".join(self.parts) if not prompt.startswith("echo:") else prompt[5:]

    async def query_stream(self, model: str, prompt: str, options=None):
        self.calls.append({"op": "stream", "model": model, "prompt": prompt, "options": options})
        if self.unreachable:
            raise BackendTransientError(self.identify(), "request failed: connection refused")
        if not self.streaming:
            return None
        stream = FakeStream(self.parts, fail_after=self.fail_after, delay=self.delay, backend=self.identify())
        self.streams.append(stream)
        return stream

    async def aclose(self) -> None:
        self.closed = True


def wire(*backends, backend: Optional[str] = None, model: str = "m1", shell=None):
    """Registry + state + pipeline + router + service over the given backends."""
    registry = BackendRegistry()
    for b in backends:
        registry.register(b)
    state = SessionState(registry, backend=backend or backends[0].identify(), model=model)
    registry.bind(state)
    pipeline = StreamingPipeline(registry, state)
    router = build_router(registry, state, pipeline, ContextWindowManager(ContextPolicy(), counter=WordCounter()))

    async def _no_shell(command: str) -> str:
        return f"ran {command}\n"

    service = ReplService(
        registry=registry,
        state=state,
        pipeline=pipeline,
        router=router,
        shell=shell or _no_shell,
    )
    return service


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def service(fake_backend):
    return wire(fake_backend)
