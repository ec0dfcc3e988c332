from __future__ import annotations
import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

from llmrepl.core.errors import BackendClientError
from llmrepl.core.ports import BackendIdentity, Fragment
from llmrepl.providers.registry import BackendRegistry

_LOREM_50 = (
    "Lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor "
    "incididunt ut labore et dolore magna aliqua Curabitur non nulla sit amet nisl "
    "tempor convallis quis ac lectus Phasellus viverra nulla ut metus varius laoreet "
    "Quisque rutrum Aenean imperdiet Etiam ultricies nisi vel augue Curabitur ullamcorper ultricies nisi"
).split()


class _WordStream:
    def __init__(self, gen: AsyncIterator[Fragment]):
        self._gen = gen

    def __aiter__(self) -> "_WordStream":
        return self

    async def __anext__(self) -> Fragment:
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        await self._gen.aclose()  # type: ignore[attr-defined]


@BackendRegistry.adapter("echo")
class EchoBackend:
    """
    Offline stub that returns a fixed 50-word lorem ipsum.
    Streaming yields one word at a time with a small delay to simulate tokens;
    `streaming=False` makes query_stream return None so callers fall back to query().
    """

    name = "echo"
    model = "echo-lorem"

    def __init__(self, token_delay: float = 0.125, words: Optional[List[str]] = None, streaming: bool = True):
        self.token_delay = float(token_delay)
        self.words = list(words) if words is not None else list(_LOREM_50)
        self.streaming = bool(streaming)
        self.identity = BackendIdentity(name=self.name, supports_streaming=self.streaming, requires_credential=False)

    @classmethod
    def create(cls, *, provider_cfg: Dict[str, Any], secrets=None, policy=None) -> "EchoBackend":
        cfg = provider_cfg or {}
        return cls(
            token_delay=cfg.get("token_delay", 0.125),
            words=cfg.get("words"),
            streaming=cfg.get("streaming", True),
        )

    def identify(self) -> str:
        return self.name

    async def check_readiness(self) -> None:
        return None

    async def enumerate_models(self) -> List[str]:
        return [self.model]

    def _check_model(self, model: str) -> None:
        if model != self.model:
            raise BackendClientError(self.name, f"model '{model}' not found")

    async def query(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        self._check_model(model)
        return " ".join(self.words)

    async def query_stream(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> Optional[_WordStream]:
        self._check_model(model)
        if not self.streaming:
            return None

        async def gen() -> AsyncIterator[Fragment]:
            last_idx = len(self.words) - 1
            for i, w in enumerate(self.words):
                yield Fragment.delta(w + ("" if i == last_idx else " "))
                if self.token_delay > 0:
                    await asyncio.sleep(self.token_delay)
            yield Fragment.end()

        return _WordStream(gen())

    async def aclose(self) -> None:
        return None
