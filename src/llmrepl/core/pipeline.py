from __future__ import annotations
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional

from llmrepl.log_utils import log_context, log_event
from .errors import BackendError, ReplError, StreamError, UnknownBackend
from .history import InteractionRecord, RecordKind
from .ports import Backend, Fragment, FragmentKind, FragmentSource, QueryRequest
from .state import SessionState

if TYPE_CHECKING:
    from llmrepl.providers.registry import BackendRegistry
    from llmrepl.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[str, str], None]  # (delta, accumulated)


class _SingleFragment:
    def __init__(self, text: str):
        self._pending: List[Fragment] = [Fragment.delta(text)] if text else []
        self._pending.append(Fragment.end())

    def __aiter__(self) -> "_SingleFragment":
        return self

    async def __anext__(self) -> Fragment:
        if not self._pending:
            raise StopAsyncIteration
        return self._pending.pop(0)

    async def aclose(self) -> None:
        self._pending.clear()


def single_fragment_stream(text: str) -> FragmentSource:
    """The whole response as one delta followed by END (fallback for non-streaming backends)."""
    return _SingleFragment(text)


class FragmentStream:
    """
    One in-flight query, pulled one text delta at a time.

    Tee: every delta is forwarded to the caller (and on_fragment) and accumulated
    into `text`; the history record is built from that same buffer. Exactly one
    record is appended per stream:
      END    -> query record, status complete
      ERROR  -> error record, status failed, partial text kept; the pull raises StreamError
      cancel -> query record, status cancelled, partial text kept

    Use it as an async context manager: leaving the block early (break, Ctrl+C,
    task cancellation) cancels the stream and releases the connection.
    """

    def __init__(
        self,
        source: FragmentSource,
        request: QueryRequest,
        state: SessionState,
        on_fragment: Optional[FragmentCallback] = None,
    ):
        self.request = request
        self._source = source
        self._state = state
        self._on_fragment = on_fragment
        self._parts: List[str] = []
        self.fragments = 0
        self.record: Optional[InteractionRecord] = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self.record is not None

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        if self.finished:
            raise StopAsyncIteration
        try:
            fragment = await self._source.__anext__()
        except StopAsyncIteration:
            # source ran dry without a terminal fragment
            self._finish(self._record("complete"))
            raise
        except ReplError as e:
            await self._fail(e)
            raise
        except Exception as e:
            error = StreamError(self.request.backend, f"stream failed: {e}")
            await self._fail(error)
            raise error from e
        if fragment.kind is FragmentKind.TEXT:
            if not isinstance(fragment.text, str):
                error = StreamError(self.request.backend, f"fragment text is {type(fragment.text).__name__}, not text")
                await self._fail(error)
                raise error
            self._parts.append(fragment.text)
            self.fragments += 1
            if self._on_fragment is not None:
                self._on_fragment(fragment.text, self.text)
            return fragment.text
        if fragment.kind is FragmentKind.END:
            self._finish(self._record("complete"))
            await self._source.aclose()
            raise StopAsyncIteration
        error = fragment.error or StreamError(self.request.backend, "stream ended with an unspecified error")
        await self._fail(error)
        raise error

    async def _fail(self, error: ReplError) -> None:
        """Record the partial text as failed and release the source; the caller raises."""
        self._finish(
            InteractionRecord.failure(
                "query",
                self.request.prompt,
                error,
                backend=self.request.backend,
                model=self.request.model,
                partial=self.text,
            )
        )
        try:
            await self._source.aclose()
        except Exception as e:
            log_event(logger, "stream.close_failed", level=logging.WARNING, backend=self.request.backend, error=str(e))

    async def collect(self) -> str:
        """Drain the stream and return the full text."""
        async for _ in self:
            pass
        return self.text

    async def cancel(self) -> None:
        """Stop pulling: record the partial text as cancelled and release the source."""
        if self.finished:
            return
        self._finish(self._record("cancelled"))
        log_event(logger, "stream.cancelled", backend=self.request.backend, model=self.request.model, fragments=self.fragments)
        await self._source.aclose()

    async def aclose(self) -> None:
        await self.cancel()

    async def __aenter__(self) -> "FragmentStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    def _record(self, status: str) -> InteractionRecord:
        return InteractionRecord(
            kind=RecordKind.QUERY,
            input=self.request.prompt,
            output=self.text,
            backend=self.request.backend,
            model=self.request.model,
            status=status,  # type: ignore[arg-type]
        )

    def _finish(self, record: InteractionRecord) -> None:
        # record first, release afterwards: partial output survives a failing close
        self.record = record
        self._state.append_history(record)
        log_event(
            logger,
            "stream.finished",
            backend=record.backend,
            model=record.model,
            status=record.status,
            fragments=self.fragments,
            chars=len(record.output),
        )


class StreamingPipeline:
    """
    Turns a prompt into a FragmentStream (or a full text) against the current selection.
    Readiness is checked before every call; failures before the first fragment append
    one error record and propagate. Selection is never changed here.
    """

    def __init__(self, registry: "BackendRegistry", state: SessionState, retry: Optional["RetryPolicy"] = None):
        self.registry = registry
        self.state = state
        self.retry = retry

    def build_request(
        self,
        prompt: str,
        *,
        backend: Optional[str] = None,
        model: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> QueryRequest:
        current_backend, current_model = self.state.selection()
        return QueryRequest(
            backend=(backend or current_backend).strip().lower(),
            model=(model or current_model).strip(),
            prompt=prompt,
            options=dict(options or {}),
        )

    async def _call(self, fn: Callable[[], Any]) -> Any:
        if self.retry is None:
            return await fn()
        return await self.retry.call(fn)

    def _resolve(self, request: QueryRequest) -> Backend:
        adapter = self.registry.get(request.backend)
        if adapter is None:
            raise UnknownBackend(request.backend)
        return adapter

    def _fail(self, request: QueryRequest, exc: Exception) -> None:
        self.state.append_history(
            InteractionRecord.failure("query", request.prompt, exc, backend=request.backend, model=request.model)
        )
        log_event(logger, "query.failed", level=logging.WARNING, backend=request.backend, model=request.model, error=str(exc))

    async def open(
        self,
        prompt: str,
        *,
        backend: Optional[str] = None,
        model: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        on_fragment: Optional[FragmentCallback] = None,
    ) -> FragmentStream:
        request = self.build_request(prompt, backend=backend, model=model, options=options)
        with log_context(backend=request.backend, model=request.model):
            log_event(logger, "query.stream_open", backend=request.backend, model=request.model)
            try:
                adapter = self._resolve(request)
                await adapter.check_readiness()
                source = await self._call(lambda: adapter.query_stream(request.model, request.prompt, request.options))
                if source is None:
                    text = await self._call(lambda: adapter.query(request.model, request.prompt, request.options))
                    source = single_fragment_stream(text)
            except (BackendError, UnknownBackend) as e:
                self._fail(request, e)
                raise
            except Exception as e:
                error = BackendError(request.backend, f"unexpected error: {e}")
                self._fail(request, error)
                raise error from e
            return FragmentStream(source, request, self.state, on_fragment=on_fragment)

    async def complete(
        self,
        prompt: str,
        *,
        backend: Optional[str] = None,
        model: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> InteractionRecord:
        """Non-streaming round trip; appends and returns the query record."""
        request = self.build_request(prompt, backend=backend, model=model, options=options)
        with log_context(backend=request.backend, model=request.model):
            log_event(logger, "query.start", backend=request.backend, model=request.model)
            try:
                adapter = self._resolve(request)
                await adapter.check_readiness()
                text = await self._call(lambda: adapter.query(request.model, request.prompt, request.options))
            except (BackendError, UnknownBackend) as e:
                self._fail(request, e)
                raise
            except Exception as e:
                error = BackendError(request.backend, f"unexpected error: {e}")
                self._fail(request, error)
                raise error from e
            record = InteractionRecord(
                kind=RecordKind.QUERY,
                input=request.prompt,
                output=text,
                backend=request.backend,
                model=request.model,
            )
            self.state.append_history(record)
            log_event(logger, "query.complete", backend=request.backend, model=request.model, chars=len(text))
            return record
