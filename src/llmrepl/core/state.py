from __future__ import annotations
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Protocol, Tuple

from .errors import UnknownBackend
from .history import InteractionRecord


class RenderMode(str, Enum):
    APPEND = "append"   # stream raw, append formatted markdown below
    LIVE = "live"       # re-render markdown as fragments arrive
    OFF = "off"         # raw text only


class Theme(str, Enum):
    DEFAULT = "default"
    NORD = "nord"
    GRUVBOX = "gruvbox"
    GRAYSCALE = "grayscale"


class _Lookup(Protocol):
    def get(self, name: str) -> Optional[Any]: ...


@dataclass(frozen=True)
class Snapshot:
    backend: str
    model: str
    render_mode: RenderMode
    theme: Theme
    history_len: int

    def to_dict(self) -> dict:
        return {
            "current_provider": self.backend,
            "current_model": self.model,
            "markdown_mode": self.render_mode.value,
            "theme": self.theme.value,
            "history_len": self.history_len,
        }


class SessionState:
    """
    The single shared source of truth for a running process: current selection,
    presentation settings and the append-only history.

    Every read and write goes through one mutex. Critical sections never await,
    so the same instance is safe from asyncio tasks and from plain threads.
    """

    def __init__(
        self,
        backends: _Lookup,
        *,
        backend: str,
        model: str,
        render_mode: RenderMode = RenderMode.APPEND,
        theme: Theme = Theme.NORD,
    ):
        self._backends = backends
        self._lock = threading.Lock()
        name = backend.strip().lower()
        if backends.get(name) is None:
            raise UnknownBackend(name)
        self._backend = name
        self._model = model.strip()
        self._render_mode = RenderMode(render_mode)
        self._theme = Theme(theme)
        self._history: List[InteractionRecord] = []

    # ----- reads -----

    def snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                backend=self._backend,
                model=self._model,
                render_mode=self._render_mode,
                theme=self._theme,
                history_len=len(self._history),
            )

    def selection(self) -> Tuple[str, str]:
        with self._lock:
            return self._backend, self._model

    def history(self) -> Tuple[InteractionRecord, ...]:
        with self._lock:
            return tuple(self._history)

    def history_len(self) -> int:
        with self._lock:
            return len(self._history)

    # ----- writes -----

    def select(self, backend: str, model: str) -> None:
        name = backend.strip().lower()
        # Re-check at call time; never trust a cached answer.
        if self._backends.get(name) is None:
            raise UnknownBackend(name)
        with self._lock:
            self._backend = name
            self._model = model.strip()

    def set_model(self, model: str) -> None:
        with self._lock:
            self._model = model.strip()

    def set_render_mode(self, mode: RenderMode) -> None:
        with self._lock:
            self._render_mode = RenderMode(mode)

    def set_theme(self, theme: Theme) -> None:
        with self._lock:
            self._theme = Theme(theme)

    def append_history(self, record: InteractionRecord) -> int:
        """Append one record; returns its index. The only way history grows."""
        with self._lock:
            self._history.append(record)
            return len(self._history) - 1
