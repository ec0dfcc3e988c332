from __future__ import annotations
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from llmrepl.log_utils import log_event
from .errors import ReplError, ShellError, UnknownBackend
from .history import InteractionRecord, RecordKind
from .pipeline import FragmentCallback, FragmentStream, StreamingPipeline
from .state import SessionState, Snapshot

if TYPE_CHECKING:
    from llmrepl.commands.router import CommandRouter
    from llmrepl.providers.registry import BackendRegistry

logger = logging.getLogger(__name__)

ShellRunner = Callable[[str], Awaitable[str]]


class ReplService:
    """
    The operations both surfaces call. Each per-request failure is recorded in
    history and re-raised; nothing here ends the process.
    """

    def __init__(
        self,
        *,
        registry: "BackendRegistry",
        state: SessionState,
        pipeline: StreamingPipeline,
        router: "CommandRouter",
        shell: ShellRunner,
        stream: bool = True,
    ):
        self.registry = registry
        self.state = state
        self.pipeline = pipeline
        self.router = router
        self._shell = shell
        self.stream = stream

    # ----- reads -----

    def snapshot(self) -> Snapshot:
        return self.state.snapshot()

    def list_backends(self) -> List[str]:
        return self.registry.list_names()

    async def list_models(self, name: Optional[str] = None) -> List[str]:
        """Catalog of `name` (or the current backend). Leaves history and selection alone."""
        key = (name or self.state.selection()[0]).strip().lower()
        backend = self.registry.get(key)
        if backend is None:
            raise UnknownBackend(key)
        await backend.check_readiness()
        return await backend.enumerate_models()

    def history(self) -> Tuple[InteractionRecord, ...]:
        return self.state.history()

    # ----- primitives -----

    async def query(self, prompt: str, *, model: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> str:
        """One non-streaming round trip against the current backend; `model` overrides for this call only."""
        record = await self.pipeline.complete(prompt, model=model, options=options)
        return record.output

    async def open_stream(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        on_fragment: Optional[FragmentCallback] = None,
    ) -> FragmentStream:
        return await self.pipeline.open(prompt, model=model, options=options, on_fragment=on_fragment)

    async def command(self, line: str) -> str:
        return await self.router.dispatch(line)

    async def shell(self, command: str) -> str:
        command = command.strip()
        backend, model = self.state.selection()
        try:
            output = await self._shell(command)
        except ReplError as e:
            self.state.append_history(InteractionRecord.failure("shell", command, e, backend=backend, model=model))
            log_event(logger, "shell.failed", level=logging.WARNING, command=command, error=str(e))
            raise
        except Exception as e:
            err = ShellError(f"Shell command failed: {e}")
            self.state.append_history(InteractionRecord.failure("shell", command, err, backend=backend, model=model))
            log_event(logger, "shell.failed", level=logging.WARNING, command=command, error=str(e))
            raise err from e
        self.state.append_history(
            InteractionRecord(kind=RecordKind.SHELL, input=command, output=output, backend=backend, model=model)
        )
        return output

    async def aclose(self) -> None:
        await self.registry.aclose()
