from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable, List, Mapping, Optional, Tuple

from llmrepl.core.errors import CommandError, ReplError, UnknownCommand
from llmrepl.core.history import InteractionRecord, RecordKind
from llmrepl.core.state import SessionState
from llmrepl.log_utils import log_event

if TYPE_CHECKING:
    from llmrepl.core.context import ContextWindowManager
    from llmrepl.core.pipeline import StreamingPipeline
    from llmrepl.providers.registry import BackendRegistry

logger = logging.getLogger(__name__)

Handler = Callable[["CommandContext", str], Awaitable[str]]


@dataclass(frozen=True)
class CommandDescriptor:
    name: str
    handler: Handler
    help: str
    aliases: Tuple[str, ...] = ()


@dataclass
class CommandContext:
    """What handlers may touch. State access goes through SessionState's own lock."""
    registry: "BackendRegistry"
    state: SessionState
    pipeline: "StreamingPipeline"
    context_window: Optional["ContextWindowManager"] = None
    router: Optional["CommandRouter"] = field(default=None, repr=False)


class CommandRouter:
    """
    Name -> descriptor mapping, fixed at construction.
    Every dispatch appends exactly one record: `command` on success, `error` otherwise
    (status "cancelled" when the dispatching task is cancelled).
    """

    def __init__(self, descriptors: Iterable[CommandDescriptor], ctx: CommandContext):
        table = {}
        ordered: List[CommandDescriptor] = []
        for d in descriptors:
            for key in (d.name, *d.aliases):
                key = key.lower()
                if key in table:
                    raise ValueError(f"Command '{key}' is registered twice")
                table[key] = d
            ordered.append(d)
        self._table: Mapping[str, CommandDescriptor] = MappingProxyType(table)
        self._ordered: Tuple[CommandDescriptor, ...] = tuple(ordered)
        self.ctx = ctx
        ctx.router = self

    def descriptors(self) -> Tuple[CommandDescriptor, ...]:
        return self._ordered

    def names(self) -> List[str]:
        return [d.name for d in self._ordered]

    def get(self, name: str) -> Optional[CommandDescriptor]:
        return self._table.get(name.strip().lower())

    @staticmethod
    def parse(line: str) -> Tuple[str, str]:
        """'/models groq' -> ('models', 'groq'). The leading slash is optional."""
        text = line.strip()
        if text.startswith("/"):
            text = text[1:]
        name, _, args = text.partition(" ")
        return name.strip().lower(), args.strip()

    def _append(self, record: InteractionRecord) -> None:
        self.ctx.state.append_history(record)

    async def dispatch(self, line: str) -> str:
        name, args = self.parse(line)
        backend, model = self.ctx.state.selection()
        entered = f"/{name} {args}".rstrip()

        descriptor = self.get(name) if name else None
        if descriptor is None:
            err: CommandError = UnknownCommand(name) if name else CommandError("Empty command")
            self._append(InteractionRecord.failure("command", entered, err, backend=backend, model=model))
            log_event(logger, "command.unknown", level=logging.WARNING, command=name)
            raise err

        log_event(logger, "command.start", level=logging.DEBUG, command=descriptor.name)
        try:
            output = await descriptor.handler(self.ctx, args)
        except asyncio.CancelledError as e:
            backend, model = self.ctx.state.selection()
            self._append(
                InteractionRecord(
                    kind=RecordKind.ERROR,
                    input=entered,
                    output=getattr(e, "partial_output", ""),
                    backend=backend,
                    model=model,
                    status="cancelled",
                    error="cancelled",
                    source="command",
                )
            )
            log_event(logger, "command.cancelled", command=descriptor.name)
            raise
        except ReplError as e:
            backend, model = self.ctx.state.selection()
            self._append(InteractionRecord.failure("command", entered, e, backend=backend, model=model))
            log_event(logger, "command.failed", level=logging.WARNING, command=descriptor.name, error=str(e))
            raise
        except Exception as e:
            err = CommandError(f"/{descriptor.name} failed: {e}")
            backend, model = self.ctx.state.selection()
            self._append(InteractionRecord.failure("command", entered, err, backend=backend, model=model))
            logger.exception("command %s raised unexpectedly", descriptor.name)
            raise err from e

        backend, model = self.ctx.state.selection()
        self._append(
            InteractionRecord(kind=RecordKind.COMMAND, input=entered, output=output, backend=backend, model=model)
        )
        return output
