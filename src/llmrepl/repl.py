from __future__ import annotations
import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Optional

from llmrepl.core.errors import ReplError
from llmrepl.core.service import ReplService
from llmrepl.log_utils import log_event
from llmrepl.render import Renderer

logger = logging.getLogger(__name__)

EXIT_WORDS = ("exit", "quit", "/exit", "/quit")


class LoopThread:
    """
    An asyncio loop on a worker thread. The main thread keeps blocking input()
    and receives KeyboardInterrupt; run() turns that into cancelling the task.
    """

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="llm-repl-loop", daemon=True)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> "LoopThread":
        self._thread.start()
        return self

    def submit(self, coro: Awaitable[Any]) -> concurrent.futures.Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)  # type: ignore[arg-type]

    async def _spawn(self, coro: Awaitable[Any]) -> asyncio.Future:
        return asyncio.ensure_future(coro)

    def run(self, coro: Awaitable[Any]) -> Any:
        """Run coro on the loop and wait. Ctrl+C cancels it, waits for cleanup, then re-raises."""
        task = self.submit(self._spawn(coro)).result()
        waiter = self.submit(asyncio.wait({task}))
        try:
            waiter.result()
        except KeyboardInterrupt:
            self.loop.call_soon_threadsafe(task.cancel)
            self.submit(asyncio.wait({task})).result()
            raise
        return task.result()

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self.loop.close()


class Repl:
    """
    Line classification: `/name args` command, `!cmd` shell, exit words, else a query.
    Per-request failures are printed and the loop continues.
    """

    def __init__(self, service: ReplService, renderer: Optional[Renderer] = None, loop: Optional[LoopThread] = None):
        self.service = service
        self.renderer = renderer or Renderer()
        self.loop = loop or LoopThread().start()

    def read_line(self) -> str:
        return self.renderer.console.input(self.renderer.prompt(self.service.snapshot()))

    def run(self) -> None:
        snap = self.service.snapshot()
        self.renderer.info("Type /help for commands, !<cmd> for shell, /reader for history, /exit to quit.", snap.theme)
        while True:
            try:
                line = self.read_line()
            except KeyboardInterrupt:
                self.renderer.info("\nCTRL-C received, exiting.", self.service.snapshot().theme)
                return
            except EOFError:
                self.renderer.info("\nCTRL-D received, exiting.", self.service.snapshot().theme)
                return
            if not self.handle(line):
                return

    def handle(self, line: str) -> bool:
        """Process one line. False means leave the loop."""
        text = line.strip()
        if not text:
            return True
        if text.lower() in EXIT_WORDS:
            return False
        try:
            if text.startswith("/"):
                self._command(text)
            elif text.startswith("!"):
                self._shell(text[1:])
            else:
                self._query(line)
        except ReplError as e:
            self.renderer.error(f"Error: {e}", self.service.snapshot().theme)
        except KeyboardInterrupt:
            self.renderer.info("\n[ interrupted ]", self.service.snapshot().theme)
        except Exception as e:
            logger.exception("unexpected failure handling %r", text)
            self.renderer.error(f"Unexpected error: {e}", self.service.snapshot().theme)
        return True

    def _command(self, text: str) -> None:
        try:
            output = self.loop.run(self.service.command(text))
        except KeyboardInterrupt:
            last = self.service.history()[-1:]
            if last and last[0].status == "cancelled" and last[0].output:
                self.renderer.command_output(last[0].output, self.service.snapshot(), plain=True)
            raise
        name, _ = self.service.router.parse(text)
        self.renderer.command_output(output, self.service.snapshot(), plain=name == "llmconvo")

    def _shell(self, command: str) -> None:
        self.renderer.shell_output(self.loop.run(self.service.shell(command)))

    def _query(self, prompt: str) -> None:
        snap = self.service.snapshot()
        if not self.service.stream:
            self.renderer.info("Querying...", snap.theme)
            text = self.loop.run(self.service.query(prompt))
            self.renderer.command_output(text, snap)
            return

        with self.renderer.stream_view(snap) as view:
            stream = None

            async def consume():
                nonlocal stream
                stream = await self.service.open_stream(prompt, on_fragment=view.on_fragment)
                async with stream:
                    await stream.collect()

            try:
                self.loop.run(consume())
            except KeyboardInterrupt:
                if stream is not None and stream.record is not None:
                    view.finish(stream.text, stream.record.status)
                log_event(logger, "repl.interrupted", level=logging.DEBUG)
                return
            except ReplError:
                if stream is not None and stream.record is not None:
                    view.finish(stream.text, stream.record.status)
                raise
            view.finish(stream.text, "complete")

    def close(self) -> None:
        try:
            self.loop.run(self.service.aclose())
        finally:
            self.loop.stop()
