from __future__ import annotations
from typing import Callable, Dict, List, Optional, Type, TYPE_CHECKING
from importlib import import_module

from llmrepl.core.errors import UnknownBackend
from llmrepl.core.ports import Backend

if TYPE_CHECKING:
    from llmrepl.core.state import SessionState


class BackendRegistry:
    """
    Two layers:
    - class level: adapter classes keyed by provider name, filled by @BackendRegistry.adapter
      (used by bootstrap to build configured backends)
    - instance level: the live adapters for this process, one per name, read-mostly after startup
    """

    _classes: Dict[str, Type] = {}

    @classmethod
    def adapter(cls, name: str) -> Callable[[Type], Type]:
        name = name.lower()
        def deco(klass: Type) -> Type:
            cls._classes[name] = klass
            return klass
        return deco

    @classmethod
    def adapter_class(cls, name: str) -> Type:
        key = name.lower()
        if key not in cls._classes:
            raise KeyError(f"Backend '{name}' has no adapter class")
        return cls._classes[key]

    @classmethod
    def ensure_imports(cls) -> None:
        """
        Import built-in adapters so their @adapter decorators run.
        Call once at bootstrap before adapter_class().
        """
        import_module("llmrepl.providers.ollama")
        import_module("llmrepl.providers.groq")
        import_module("llmrepl.providers.gemini")
        import_module("llmrepl.providers.openai_adapter")
        import_module("llmrepl.providers.echo")

    def __init__(self) -> None:
        self._backends: Dict[str, Backend] = {}
        self._state: Optional["SessionState"] = None

    def register(self, backend: Backend) -> None:
        """Startup-time only."""
        name = backend.identify().lower()
        if name in self._backends:
            raise ValueError(f"Backend '{name}' is already registered")
        self._backends[name] = backend

    def list_names(self) -> List[str]:
        return list(self._backends)

    def get(self, name: str) -> Optional[Backend]:
        return self._backends.get(name.strip().lower())

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    # ----- selection, delegated to SessionState -----

    def bind(self, state: "SessionState") -> None:
        self._state = state

    def _session(self) -> "SessionState":
        if self._state is None:
            raise RuntimeError("BackendRegistry is not bound to a SessionState")
        return self._state

    def current(self) -> Backend:
        name, _ = self._session().selection()
        backend = self.get(name)
        if backend is None:
            raise UnknownBackend(name)
        return backend

    def set_current(self, name: str, model: Optional[str] = None) -> None:
        """
        Select a backend. Does not check readiness: that surfaces on first real use.
        Keeps the current model unless one is given.
        """
        key = name.strip().lower()
        if key not in self._backends:
            raise UnknownBackend(key)
        state = self._session()
        if model is None:
            _, model = state.selection()
        state.select(key, model)

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()
