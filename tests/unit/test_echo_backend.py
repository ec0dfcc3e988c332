from __future__ import annotations

import pytest

from conftest import wire
from llmrepl.core.errors import BackendClientError
from llmrepl.core.ports import FragmentKind
from llmrepl.providers.echo import EchoBackend


@pytest.mark.asyncio
async def test_echo_streams_one_word_per_fragment():
    backend = EchoBackend(token_delay=0, words=["alpha", "beta", "gamma"])
    frags = [f async for f in await backend.query_stream("echo-lorem", "anything")]
    assert [f.text for f in frags[:-1]] == ["alpha ", "beta ", "gamma"]
    assert frags[-1].kind is FragmentKind.END
    assert "".join(f.text for f in frags) == await backend.query("echo-lorem", "x")


@pytest.mark.asyncio
async def test_echo_default_lorem_and_catalog():
    backend = EchoBackend.create(provider_cfg={"token_delay": 0})
    assert await backend.enumerate_models() == ["echo-lorem"]
    text = await backend.query("echo-lorem", "hi")
    assert text.startswith("Lorem ipsum") and len(text.split()) == 50


@pytest.mark.asyncio
async def test_echo_unknown_model_is_backend_error():
    with pytest.raises(BackendClientError):
        await EchoBackend(token_delay=0).query("gpt-9", "hi")


@pytest.mark.asyncio
async def test_echo_without_streaming_goes_through_fallback():
    backend = EchoBackend.create(provider_cfg={"token_delay": 0, "streaming": False, "words": ["one", "two"]})
    assert await backend.query_stream("echo-lorem", "hi") is None
    assert not backend.identity.supports_streaming

    svc = wire(backend, model="echo-lorem")
    stream = await svc.open_stream("hi")
    async with stream:
        assert await stream.collect() == "one two"
    assert svc.history()[0].complete


@pytest.mark.asyncio
async def test_echo_stream_close_early():
    backend = EchoBackend(token_delay=0)
    stream = await backend.query_stream("echo-lorem", "hi")
    await stream.__anext__()
    await stream.aclose()
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
