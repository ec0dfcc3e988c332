from __future__ import annotations
import asyncio

import pytest

from conftest import FakeBackend, FakeStream, wire
from llmrepl.core.errors import BackendError, NotReady, StreamError, UnknownBackend
from llmrepl.core.history import RecordKind
from llmrepl.core.pipeline import single_fragment_stream
from llmrepl.core.ports import Fragment, FragmentKind


@pytest.mark.asyncio
async def test_stream_tee_matches_non_streaming_text():
    backend = FakeBackend(parts=["The ", "quick ", "brown ", "fox"])
    svc = wire(backend)

    seen = []
    stream = await svc.open_stream("hi", on_fragment=lambda delta, acc: seen.append((delta, acc)))
    async with stream:
        streamed = await stream.collect()

    full = await svc.query("hi")
    assert streamed == full == "The quick brown fox"
    assert [d for d, _ in seen] == ["The ", "quick ", "brown ", "fox"]
    assert seen[-1][1] == streamed

    history = svc.history()
    assert [r.kind for r in history] == [RecordKind.QUERY, RecordKind.QUERY]
    assert history[0].output == history[1].output
    assert all(r.complete for r in history)


@pytest.mark.asyncio
async def test_cancel_after_n_fragments_records_partial_text():
    backend = FakeBackend(parts=["a", "b", "c", "d", "e"])
    svc = wire(backend)

    stream = await svc.open_stream("go")
    async with stream:
        got = []
        async for piece in stream:
            got.append(piece)
            if len(got) == 2:
                break

    (record,) = svc.history()
    assert record.kind is RecordKind.QUERY
    assert record.output == "ab" == "".join(got)
    assert record.status == "cancelled"
    assert not record.complete
    assert backend.streams[0].closed


@pytest.mark.asyncio
async def test_task_cancellation_mid_stream_releases_and_records():
    backend = FakeBackend(parts=["x"] * 50, delay=0.01)
    svc = wire(backend)
    started = asyncio.Event()

    async def consume():
        stream = await svc.open_stream("slow", on_fragment=lambda d, a: started.set())
        async with stream:
            await stream.collect()

    task = asyncio.create_task(consume())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (record,) = svc.history()
    assert record.status == "cancelled"
    assert record.output and set(record.output) == {"x"}
    assert backend.streams[0].closed


@pytest.mark.asyncio
async def test_mid_stream_error_keeps_partial_and_raises():
    backend = FakeBackend(parts=["one ", "two ", "three"], fail_after=2)
    svc = wire(backend)

    stream = await svc.open_stream("q")
    with pytest.raises(StreamError):
        async with stream:
            await stream.collect()

    (record,) = svc.history()
    assert record.kind is RecordKind.ERROR
    assert record.status == "failed"
    assert record.output == "one two "
    assert "connection reset" in record.error
    assert record.source == "query"


@pytest.mark.asyncio
async def test_non_streaming_backend_falls_back_to_single_fragment():
    backend = FakeBackend(parts=["whole", " answer"], streaming=False)
    svc = wire(backend)
    stream = await svc.open_stream("q")
    async with stream:
        pieces = [p async for p in stream]
    assert pieces == ["whole answer"]
    assert [c["op"] for c in backend.calls] == ["stream", "query"]
    assert svc.history()[0].output == "whole answer"


@pytest.mark.asyncio
async def test_single_fragment_stream_shape():
    src = single_fragment_stream("abc")
    kinds = [f.kind async for f in src]
    assert kinds == [FragmentKind.TEXT, FragmentKind.END]
    empty = [f.kind async for f in single_fragment_stream("")]
    assert empty == [FragmentKind.END]


@pytest.mark.asyncio
async def test_not_ready_records_one_error_without_touching_selection():
    svc = wire(FakeBackend("open"), FakeBackend("locked", ready=False), backend="locked", model="m1")
    before = svc.snapshot()

    with pytest.raises(NotReady):
        await svc.open_stream("hello")
    with pytest.raises(NotReady):
        await svc.query("hello")

    history = svc.history()
    assert len(history) == 2
    assert all(r.kind is RecordKind.ERROR and r.backend == "locked" for r in history)
    assert "not ready" in history[0].error
    after = svc.snapshot()
    assert (after.backend, after.model) == (before.backend, before.model)


@pytest.mark.asyncio
async def test_model_override_applies_to_one_call_only():
    backend = FakeBackend()
    svc = wire(backend, model="m1")
    await svc.query("hi", model="m2")
    assert backend.calls[-1]["model"] == "m2"
    assert svc.snapshot().model == "m1"
    assert svc.history()[-1].model == "m2"


@pytest.mark.asyncio
async def test_pipeline_rejects_unknown_backend_override():
    svc = wire(FakeBackend("a"))
    with pytest.raises(UnknownBackend):
        await svc.pipeline.complete("hi", backend="ghost")
    assert svc.history()[-1].kind is RecordKind.ERROR


@pytest.mark.asyncio
async def test_stream_records_exactly_once():
    svc = wire(FakeBackend(parts=["a"]))
    stream = await svc.open_stream("q")
    async with stream:
        await stream.collect()
        await stream.cancel()
    await stream.aclose()
    assert len(svc.history()) == 1
    assert svc.history()[0].status == "complete"


class Crashing(FakeBackend):
    """Adapter bug: raises something outside the error tree."""

    async def query(self, model, prompt, options=None):
        return [][0]

    async def query_stream(self, model, prompt, options=None):
        raise KeyError("choices")


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_becomes_backend_error_record():
    svc = wire(Crashing())
    with pytest.raises(BackendError) as ei:
        await svc.query("hi")
    assert isinstance(ei.value.__cause__, IndexError)
    with pytest.raises(BackendError):
        await svc.open_stream("hi")

    history = svc.history()
    assert [r.kind for r in history] == [RecordKind.ERROR, RecordKind.ERROR]
    assert all(r.status == "failed" and "unexpected error" in r.error for r in history)


class ExplodingStream(FakeStream):
    async def __anext__(self) -> Fragment:
        if self.sent == 2:
            raise RuntimeError("decoder bug")
        return await super().__anext__()


class BadTextStream(FakeStream):
    async def __anext__(self) -> Fragment:
        if self.sent == 1:
            self.sent += 1
            return Fragment(FragmentKind.TEXT, text=5)  # type: ignore[arg-type]
        return await super().__anext__()


class SourceBackend(FakeBackend):
    def __init__(self, stream_cls, **kw):
        super().__init__(**kw)
        self.stream_cls = stream_cls

    async def query_stream(self, model, prompt, options=None):
        stream = self.stream_cls(self.parts)
        self.streams.append(stream)
        return stream


@pytest.mark.asyncio
@pytest.mark.parametrize("stream_cls, detail, partial", [
    (ExplodingStream, "decoder bug", "ab"),
    (BadTextStream, "not text", "a"),
])
async def test_broken_source_fails_with_one_record(stream_cls, detail, partial):
    backend = SourceBackend(stream_cls, parts=["a", "b", "c"])
    svc = wire(backend)

    stream = await svc.open_stream("q")
    with pytest.raises(StreamError) as ei:
        async with stream:
            await stream.collect()
    assert detail in str(ei.value)
    assert backend.streams[0].closed

    (record,) = svc.history()
    assert record.kind is RecordKind.ERROR and record.status == "failed"
    assert record.output == partial
