from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from .errors import BackendError


@dataclass(frozen=True)
class BackendIdentity:
    name: str
    supports_streaming: bool = True
    requires_credential: bool = False


@dataclass(frozen=True)
class QueryRequest:
    """One call against one backend. Built fresh per call, never shared."""
    backend: str
    model: str
    prompt: str
    options: Dict[str, Any] = field(default_factory=dict)


class FragmentKind(str, Enum):
    TEXT = "text"
    END = "end"
    ERROR = "error"


@dataclass(frozen=True)
class Fragment:
    kind: FragmentKind
    text: str = ""
    error: Optional[BackendError] = None

    @classmethod
    def delta(cls, text: str) -> "Fragment":
        return cls(FragmentKind.TEXT, text=text)

    @classmethod
    def end(cls) -> "Fragment":
        return cls(FragmentKind.END)

    @classmethod
    def failure(cls, error: BackendError) -> "Fragment":
        return cls(FragmentKind.ERROR, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.kind is not FragmentKind.TEXT


class FragmentSource(Protocol):
    """
    Live sequence of Fragments for one stream. Ends with exactly one terminal
    Fragment (END or ERROR). aclose() releases the network resource early.
    """

    def __aiter__(self) -> AsyncIterator[Fragment]: ...

    async def __anext__(self) -> Fragment: ...

    async def aclose(self) -> None: ...


class Backend(Protocol):
    """
    Interface the core uses to talk to any text-generation backend.
    Adapters report failures by raising BackendError subclasses; they never retry.
    """

    identity: BackendIdentity

    def identify(self) -> str:
        """Backend name. Pure, no I/O."""
        ...

    async def check_readiness(self) -> None:
        """Raise NotReady if a prerequisite (e.g. credential) is missing. No network call."""
        ...

    async def enumerate_models(self) -> List[str]:
        """Network call; the backend's current catalog in its own order."""
        ...

    async def query(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """Single round trip. Returns the full response text."""
        ...

    async def query_stream(
        self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None
    ) -> Optional[FragmentSource]:
        """
        None when this backend/model cannot stream (caller falls back to query()),
        otherwise a live FragmentSource. Errors before the first byte are raised here.
        """
        ...

    async def aclose(self) -> None:
        """Release long-lived clients."""
        ...
